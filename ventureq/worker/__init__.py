from .executor import JobExecutor, Success, Failure, HandlerOutcome, Handler
from .pool import Worker, WorkerPool, load_handlers, normalize_handlers

__all__ = [
    'JobExecutor', 'Success', 'Failure', 'HandlerOutcome', 'Handler',
    'Worker', 'WorkerPool', 'load_handlers', 'normalize_handlers',
]
