"""Per-queue lifecycle event stream"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional

from ventureq.broker import BrokerInterface
from ventureq.models import QueueName
from ventureq.utils.timeutil import from_ms


class EventType(Enum):
    """Lifecycle events appended by the broker"""
    ENQUEUED = "enqueued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"    # failed attempt, retry scheduled
    WAITING = "waiting"    # promoted from Delayed
    STALLED = "stalled"    # lease expired, returned to Waiting


@dataclass(frozen=True)
class JobEvent:
    id: str
    event: EventType
    job_id: str
    queue: QueueName
    timestamp: datetime
    data: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry_id: str, fields: Dict[str, str]) -> 'JobEvent':
        data = dict(fields)
        return cls(
            id=entry_id,
            event=EventType(data.pop('event')),
            job_id=data.pop('job_id'),
            queue=QueueName(data.pop('queue')),
            timestamp=from_ms(data.pop('timestamp')),
            data=data,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'id': self.id,
            'event': self.event.value,
            'job_id': self.job_id,
            'queue': self.queue.value,
            'timestamp': self.timestamp.isoformat(),
            **self.data,
        }


class EventStream:
    """
    Read side of the event stream. Events are written by the broker inside
    the transaction of the transition they describe; delivery to listeners
    is best-effort and a listener that was not connected does not get the
    events it missed.
    """

    def __init__(self, broker: BrokerInterface, block_ms: int = 1000) -> None:
        self.broker = broker
        self.block_ms = block_ms

    def recent(self, queue: QueueName, count: int = 100) -> List[JobEvent]:
        """Newest first"""
        return [JobEvent.from_entry(i, f) for i, f in self.broker.recent_events(queue, count)]

    def history(self, queue: QueueName, job_id: Optional[str] = None) -> List[JobEvent]:
        """Oldest first, optionally for a single job"""
        events = [JobEvent.from_entry(i, f) for i, f in self.broker.event_history(queue)]
        if job_id is not None:
            events = [e for e in events if e.job_id == job_id]
        return events

    def read(self, queue: QueueName, last_id: str = '0', count: Optional[int] = None) -> List[JobEvent]:
        """Non-blocking read of events after last_id"""
        return [JobEvent.from_entry(i, f) for i, f in self.broker.read_events(queue, last_id, count)]

    def listen(self, queue: QueueName, stop_event: Optional[threading.Event] = None) -> Iterator[JobEvent]:
        """Yield events appended from now on until stop_event is set"""
        last_id = '$'
        while stop_event is None or not stop_event.is_set():
            entries = self.broker.read_events(queue, last_id, block_ms=self.block_ms)
            for entry_id, fields in entries:
                last_id = entry_id
                yield JobEvent.from_entry(entry_id, fields)
