"""SchedulingService - owns the broker connection, queues, events and scheduler"""

from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union

import redis

from ventureq.broker import BrokerConnection, RedisBroker
from ventureq.config import Config
from ventureq.events import EventStream
from ventureq.exceptions import VentureQException
from ventureq.models import (
    BusinessLaunchStepPayload,
    MetricsAggregationPayload,
    OpportunityDetectionPayload,
    OPPORTUNITY_RECURRENCE,
    QueueName,
    Source,
    sources_from,
)
from ventureq.queue import Queue
from ventureq.scheduler import Scheduler
from ventureq.utils import setup_logger, utcnow


class SchedulingService:
    """
    Explicitly constructed entry point for producers and workers.

    Usage:
        with SchedulingService(Config.load()) as service:
            job_id = service.enqueue_business_launch_step("b1", "u1", 3)

    open() connects to the broker, builds the three queues and (unless
    run_scheduler is False) starts the scheduler thread. shutdown() stops
    the scheduler and releases the broker connection. Jobs a worker had
    already claimed stay Active until reported or reclaimed as stalled.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[redis.Redis] = None,
                 clock: Callable[[], datetime] = utcnow, run_scheduler: bool = True) -> None:
        self.config = config or Config.load()
        self.clock = clock
        self.run_scheduler = run_scheduler
        self.logger = setup_logger("service")
        self._client = client
        self._connection: Optional[BrokerConnection] = None
        self._broker: Optional[RedisBroker] = None
        self._queues: Dict[QueueName, Queue] = {}
        self._events: Optional[EventStream] = None
        self._scheduler: Optional[Scheduler] = None

    def open(self) -> 'SchedulingService':
        if self._connection is not None:
            return self

        self._connection = BrokerConnection(self.config, client=self._client)
        self._broker = RedisBroker(
            self._connection,
            prefix=self.config.key_prefix,
            event_maxlen=self.config.event_stream_maxlen,
        )
        self._queues = {
            name: Queue(
                name,
                self._broker,
                clock=self.clock,
                job_timeout=self.config.job_timeout,
                poll_interval=self.config.worker_poll_interval,
            )
            for name in QueueName
        }
        self._events = EventStream(self._broker)
        self._scheduler = Scheduler(self._queues, self._broker, self._connection, self.config, clock=self.clock)
        if self.run_scheduler:
            self._scheduler.start()

        self.logger.info(f"Scheduling service opened ({len(self._queues)} queues)")
        return self

    def shutdown(self) -> None:
        """Stop the scheduler thread and close the broker connection; idempotent"""
        if self._connection is None:
            return
        try:
            if self._scheduler is not None:
                self._scheduler.stop()
        finally:
            self._connection.close()
            self._connection = None
            self._broker = None
            self._queues = {}
            self._events = None
            self._scheduler = None
            self.logger.info("Scheduling service shut down")

    def __enter__(self) -> 'SchedulingService':
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def _require_open(self) -> None:
        if self._connection is None:
            raise VentureQException("SchedulingService is not open; call open() first")

    @property
    def connection(self) -> BrokerConnection:
        self._require_open()
        return self._connection

    @property
    def broker(self) -> RedisBroker:
        self._require_open()
        return self._broker

    @property
    def queues(self) -> Dict[QueueName, Queue]:
        self._require_open()
        return dict(self._queues)

    def queue(self, name: Union[str, QueueName]) -> Queue:
        self._require_open()
        return self._queues[QueueName(name) if isinstance(name, str) else name]

    @property
    def events(self) -> EventStream:
        self._require_open()
        return self._events

    @property
    def scheduler(self) -> Scheduler:
        self._require_open()
        return self._scheduler

    def enqueue_opportunity_detection(self, sources: Iterable[Union[str, Source]],
                                      force_refresh: bool = False) -> str:
        """Register the 6-hourly detection run (once) and return its pending occurrence"""
        payload = OpportunityDetectionPayload(sources=sources_from(sources), force_refresh=force_refresh)
        return self.queue(QueueName.OPPORTUNITY_DETECTION).add(payload, recurrence=OPPORTUNITY_RECURRENCE)

    def enqueue_business_launch_step(self, business_id: str, user_id: str, step: int) -> str:
        payload = BusinessLaunchStepPayload(business_id=business_id, user_id=user_id, step=step)
        return self.queue(QueueName.BUSINESS_LAUNCH_STEP).add(payload)

    def enqueue_metrics_aggregation(self, business_id: str, date: Union[str, date]) -> str:
        payload = MetricsAggregationPayload(business_id=business_id, date=date)
        return self.queue(QueueName.METRICS_AGGREGATION).add(payload)
