"""Broker connection with reconnection policy"""

import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from ventureq.config import Config
from ventureq.exceptions import QueueUnavailable
from ventureq.utils import setup_logger


CONNECTIVITY_ERRORS = (RedisConnectionError, RedisTimeoutError)


class BrokerConnection:
    """
    Owns the Redis client shared by every queue, the scheduler and the event stream.

    Individual commands fail fast: after a few client-level retries a
    connectivity error surfaces as QueueUnavailable. Long-running loops call
    wait_until_available(), which retries forever with exponential backoff
    since nothing can make progress without the broker.
    """

    def __init__(self, config: Config, client: Optional[redis.Redis] = None) -> None:
        self.config = config
        self.logger = setup_logger("broker")
        self._owns_client = client is None
        self._client = client if client is not None else self._connect()
        self._closed = False

    def _connect(self) -> redis.Redis:
        retry = Retry(
            ExponentialBackoff(cap=self.config.reconnect_max_delay, base=self.config.reconnect_base_delay),
            self.config.command_retries,
        )
        return redis.Redis.from_url(
            self.config.redis_url,
            decode_responses=True,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )

    @property
    def client(self) -> redis.Redis:
        if self._closed:
            raise QueueUnavailable("Broker connection has been closed")
        return self._client

    @contextmanager
    def guard(self) -> Iterator[redis.Redis]:
        """Run broker commands, translating connectivity failures into QueueUnavailable"""
        client = self.client
        try:
            yield client
        except CONNECTIVITY_ERRORS as e:
            raise QueueUnavailable(f"Broker unavailable at {self._describe()}: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except CONNECTIVITY_ERRORS:
            return False

    def wait_until_available(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Block until the broker answers a PING. Retries are unbounded; returns
        False only if stop_event is set (or the connection closed) first.
        """
        backoff = ExponentialBackoff(cap=self.config.reconnect_max_delay, base=self.config.reconnect_base_delay)
        failures = 0
        while not self._closed:
            if self.ping():
                if failures:
                    self.logger.info(f"Broker reachable again after {failures} failed attempt(s)")
                return True
            failures += 1
            delay = backoff.compute(failures)
            self.logger.warning(f"Broker unreachable at {self._describe()}, retrying in {delay:.1f}s")
            if stop_event is not None:
                if stop_event.wait(delay):
                    return False
            else:
                time.sleep(delay)
        return False

    def close(self) -> None:
        """Release the client's connection pool; safe to call twice"""
        if self._closed:
            return
        self._closed = True
        if self._owns_client:
            self._client.close()
        self.logger.info("Broker connection closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def _describe(self) -> str:
        if self._owns_client:
            return self.config.redis_url.rsplit('@', 1)[-1]
        return "<injected client>"
