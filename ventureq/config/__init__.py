from .settings import Config, DEFAULT_REDIS_URL

__all__ = ['Config', 'DEFAULT_REDIS_URL']
