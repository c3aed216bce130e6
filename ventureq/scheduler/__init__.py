from .repeat import RepeatRule
from .scheduler import Scheduler, TickResult

__all__ = ['RepeatRule', 'Scheduler', 'TickResult']
