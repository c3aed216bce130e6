from .manager import Queue

__all__ = ['Queue']
