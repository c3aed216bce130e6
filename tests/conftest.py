"""Shared fixtures: in-memory Redis server, controllable clock, open service"""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from redis.backoff import NoBackoff
from redis.retry import Retry

from ventureq.config import Config
from ventureq.service import SchedulingService


START = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


def fake_client(server):
    """Client on the shared in-memory server; connection errors surface immediately"""
    return fakeredis.FakeRedis(server=server, decode_responses=True, retry=Retry(NoBackoff(), 0))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fake_client(redis_server)


@pytest.fixture
def test_config():
    """Config with short intervals so loops in tests turn over quickly"""
    return Config(
        job_timeout=60,
        worker_poll_interval=0.01,
        scheduler_tick_interval=0.05,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
    )


@pytest.fixture
def make_service(test_config, redis_server, clock):
    """Factory for extra services sharing the same Redis server and clock"""
    opened = []

    def _make(**kwargs):
        client = fake_client(redis_server)
        kwargs.setdefault('run_scheduler', False)
        service = SchedulingService(test_config, client=client, clock=clock, **kwargs).open()
        opened.append(service)
        return service

    yield _make
    for service in opened:
        service.shutdown()


@pytest.fixture
def service(test_config, redis_client, clock):
    """Open scheduling service without a background scheduler thread"""
    svc = SchedulingService(test_config, client=redis_client, clock=clock, run_scheduler=False).open()
    yield svc
    svc.shutdown()
