from .base import BrokerInterface
from .connection import BrokerConnection
from .redis_store import RedisBroker, STALLED_REASON

__all__ = ['BrokerInterface', 'BrokerConnection', 'RedisBroker', 'STALLED_REASON']
