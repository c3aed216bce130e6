from .logging import setup_logger
from .timeutil import utcnow, to_ms, from_ms

__all__ = ['setup_logger', 'utcnow', 'to_ms', 'from_ms']
