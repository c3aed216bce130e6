"""Job model with state management"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Type

from ventureq.exceptions import InvalidPayload
from ventureq.models.payloads import (
    BusinessLaunchStepPayload,
    MetricsAggregationPayload,
    OpportunityDetectionPayload,
    Payload,
)
from ventureq.utils.timeutil import from_ms, to_ms, utcnow


class QueueName(Enum):
    """The three queues of the system"""
    OPPORTUNITY_DETECTION = "opportunity-detection"
    BUSINESS_LAUNCH_STEP = "business-launch-step"
    METRICS_AGGREGATION = "metrics-aggregation"


class JobState(Enum):
    """Job state enumeration"""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: delay before the next attempt doubles per failure"""
    base_delay_ms: int
    type: str = "exponential"

    def delay_for(self, attempts_made: int) -> timedelta:
        """Delay after the given number of failed attempts (>= 1)"""
        if attempts_made < 1:
            raise ValueError("attempts_made must be >= 1")
        return timedelta(milliseconds=self.base_delay_ms * 2 ** (attempts_made - 1))


@dataclass(frozen=True)
class RetentionPolicy:
    """Ceiling on retained terminal jobs; None means unbounded"""
    count: Optional[int] = None
    age: Optional[timedelta] = None


@dataclass(frozen=True)
class QueueOptions:
    """Per-queue defaults applied to every job added to the queue"""
    job_name: str
    payload_type: Type[Any]
    max_attempts: int
    backoff: BackoffPolicy
    remove_on_complete: RetentionPolicy = RetentionPolicy()
    remove_on_fail: RetentionPolicy = RetentionPolicy(count=1000)


OPPORTUNITY_RECURRENCE = "0 */6 * * *"  # every 6 hours

QUEUE_DEFAULTS: Dict[QueueName, QueueOptions] = {
    QueueName.OPPORTUNITY_DETECTION: QueueOptions(
        job_name="detect-opportunities",
        payload_type=OpportunityDetectionPayload,
        max_attempts=3,
        backoff=BackoffPolicy(base_delay_ms=5000),
        remove_on_complete=RetentionPolicy(count=100, age=timedelta(hours=24)),
        remove_on_fail=RetentionPolicy(count=1000),
    ),
    QueueName.BUSINESS_LAUNCH_STEP: QueueOptions(
        job_name="launch-step",
        payload_type=BusinessLaunchStepPayload,
        max_attempts=2,
        backoff=BackoffPolicy(base_delay_ms=3000),
    ),
    QueueName.METRICS_AGGREGATION: QueueOptions(
        job_name="aggregate-metrics",
        payload_type=MetricsAggregationPayload,
        max_attempts=5,
        backoff=BackoffPolicy(base_delay_ms=2000),
    ),
}


def coerce_payload(queue: QueueName, payload: Any) -> Payload:
    """Accept a typed payload or a plain dict; reject anything else for this queue"""
    expected = QUEUE_DEFAULTS[queue].payload_type
    if isinstance(payload, expected):
        return payload
    if isinstance(payload, dict):
        return expected.from_dict(payload)
    raise InvalidPayload(
        f"Queue '{queue.value}' expects {expected.__name__}, got {type(payload).__name__}"
    )


@dataclass
class Job:
    """Job model representing one unit of background work"""
    id: str
    queue: QueueName
    name: str
    payload: Payload
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    backoff: BackoffPolicy = BackoffPolicy(base_delay_ms=1000)
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    result: Optional[str] = None
    repeat_key: Optional[str] = None
    stalled_count: int = 0
    claim_count: int = 0

    def should_retry(self) -> bool:
        """Check if another attempt is allowed after the current one"""
        return self.attempts_made < self.max_attempts

    def to_hash(self) -> Dict[str, str]:
        """Serialize job to a flat mapping for the broker (None fields omitted)"""
        data = {
            'id': self.id,
            'queue': self.queue.value,
            'name': self.name,
            'payload': json.dumps(self.payload.to_dict()),
            'state': self.state.value,
            'attempts_made': str(self.attempts_made),
            'max_attempts': str(self.max_attempts),
            'backoff_type': self.backoff.type,
            'backoff_base_ms': str(self.backoff.base_delay_ms),
            'created_at': str(to_ms(self.created_at)),
            'processed_at': str(to_ms(self.processed_at)) if self.processed_at else None,
            'finished_at': str(to_ms(self.finished_at)) if self.finished_at else None,
            'next_run_at': str(to_ms(self.next_run_at)) if self.next_run_at else None,
            'failed_reason': self.failed_reason,
            'result': self.result,
            'repeat_key': self.repeat_key,
            'stalled_count': str(self.stalled_count),
            'claim_count': str(self.claim_count),
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> 'Job':
        """Deserialize job from a broker hash"""
        queue = QueueName(data['queue'])
        payload_type = QUEUE_DEFAULTS[queue].payload_type
        return cls(
            id=data['id'],
            queue=queue,
            name=data['name'],
            payload=payload_type.from_dict(json.loads(data['payload'])),
            state=JobState(data['state']),
            attempts_made=int(data.get('attempts_made', 0)),
            max_attempts=int(data['max_attempts']),
            backoff=BackoffPolicy(
                base_delay_ms=int(data['backoff_base_ms']),
                type=data.get('backoff_type', 'exponential'),
            ),
            created_at=from_ms(data['created_at']),
            processed_at=from_ms(data.get('processed_at')),
            finished_at=from_ms(data.get('finished_at')),
            next_run_at=from_ms(data.get('next_run_at')),
            failed_reason=data.get('failed_reason'),
            result=data.get('result'),
            repeat_key=data.get('repeat_key'),
            stalled_count=int(data.get('stalled_count', 0)),
            claim_count=int(data.get('claim_count', 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view for the CLI and web dashboard"""
        return {
            'id': self.id,
            'queue': self.queue.value,
            'name': self.name,
            'payload': self.payload.to_dict(),
            'state': self.state.value,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'backoff': {'type': self.backoff.type, 'delay_ms': self.backoff.base_delay_ms},
            'created_at': self.created_at.isoformat(),
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'next_run_at': self.next_run_at.isoformat() if self.next_run_at else None,
            'failed_reason': self.failed_reason,
            'result': self.result,
            'repeat_key': self.repeat_key,
            'stalled_count': self.stalled_count,
            'claim_count': self.claim_count,
        }
