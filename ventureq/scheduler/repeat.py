"""Cron recurrence rules"""

import hashlib
import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict

from apscheduler.triggers.cron import CronTrigger

from ventureq.exceptions import ConfigurationException
from ventureq.models import BackoffPolicy, Job, JobState, QueueName, QUEUE_DEFAULTS
from ventureq.utils.timeutil import from_ms, to_ms


def _trigger(pattern: str, tz: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(pattern, timezone=tz)
    except ValueError as e:
        raise ConfigurationException(f"Invalid cron pattern '{pattern}': {e}") from e


@dataclass(frozen=True)
class RepeatRule:
    """
    Immutable recurrence configuration plus the slot cursor.

    ``next_slot_ms`` is the fire time of the oldest occurrence not yet
    handed over to the delayed set; the scheduler advances it with a
    compare-and-set, one cron slot at a time. Occurrence ids are derived
    from the slot, so creating the same occurrence twice is a no-op.
    """
    queue: QueueName
    name: str
    pattern: str
    payload: Dict[str, Any]
    max_attempts: int
    backoff_base_ms: int
    next_slot_ms: int
    tz: str = "UTC"

    @classmethod
    def create(cls, queue: QueueName, name: str, pattern: str, payload: Dict[str, Any],
               max_attempts: int, backoff_base_ms: int, now: datetime, tz: str = "UTC") -> 'RepeatRule':
        """New rule whose first occurrence is the first cron slot at or after now"""
        first = _trigger(pattern, tz).get_next_fire_time(None, now)
        if first is None:
            raise ConfigurationException(f"Cron pattern '{pattern}' never fires")
        return cls(
            queue=queue,
            name=name,
            pattern=pattern,
            payload=payload,
            max_attempts=max_attempts,
            backoff_base_ms=backoff_base_ms,
            next_slot_ms=to_ms(first),
            tz=tz,
        )

    @property
    def key(self) -> str:
        """Identity of the rule: registering the same name and pattern twice is a no-op"""
        raw = f"{self.queue.value}:{self.name}:{self.pattern}:{self.tz}"
        return hashlib.md5(raw.encode('utf-8')).hexdigest()

    def slot_after(self, slot_ms: int) -> int:
        """The cron slot strictly after slot_ms"""
        previous = from_ms(str(slot_ms))
        fire = _trigger(self.pattern, self.tz).get_next_fire_time(previous, previous)
        if fire is None:
            raise ConfigurationException(f"Cron pattern '{self.pattern}' has no slot after {previous}")
        return to_ms(fire)

    def advanced(self) -> 'RepeatRule':
        return replace(self, next_slot_ms=self.slot_after(self.next_slot_ms))

    def occurrence_id(self, slot_ms: int) -> str:
        return f"repeat:{self.key}:{slot_ms}"

    def build_occurrence(self, slot_ms: int, now: datetime) -> Job:
        """Fresh Delayed job for one scheduled slot"""
        payload_type = QUEUE_DEFAULTS[self.queue].payload_type
        return Job(
            id=self.occurrence_id(slot_ms),
            queue=self.queue,
            name=self.name,
            payload=payload_type.from_dict(self.payload),
            state=JobState.DELAYED,
            max_attempts=self.max_attempts,
            backoff=BackoffPolicy(base_delay_ms=self.backoff_base_ms),
            created_at=now,
            next_run_at=from_ms(str(slot_ms)),
            repeat_key=self.key,
        )

    def to_json(self) -> str:
        return json.dumps({
            'queue': self.queue.value,
            'name': self.name,
            'pattern': self.pattern,
            'payload': self.payload,
            'max_attempts': self.max_attempts,
            'backoff_base_ms': self.backoff_base_ms,
            'next_slot_ms': self.next_slot_ms,
            'tz': self.tz,
        }, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> 'RepeatRule':
        data = json.loads(raw)
        return cls(
            queue=QueueName(data['queue']),
            name=data['name'],
            pattern=data['pattern'],
            payload=data['payload'],
            max_attempts=int(data['max_attempts']),
            backoff_base_ms=int(data['backoff_base_ms']),
            next_slot_ms=int(data['next_slot_ms']),
            tz=data.get('tz', 'UTC'),
        )
