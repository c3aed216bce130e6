"""Queue - facade over the broker for one named queue"""

import json
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ventureq.broker import BrokerInterface
from ventureq.exceptions import InvalidJobStateException, InvalidPayload, JobNotFoundException
from ventureq.models import (
    BackoffPolicy,
    Job,
    JobState,
    QueueName,
    QueueOptions,
    QUEUE_DEFAULTS,
    coerce_payload,
)
from ventureq.scheduler.repeat import RepeatRule
from ventureq.utils import setup_logger, to_ms, utcnow


class Queue:
    """Durable, named channel of jobs: enqueue, dequeue, report outcome"""

    def __init__(self, name: QueueName, broker: BrokerInterface,
                 options: Optional[QueueOptions] = None,
                 clock: Callable[[], datetime] = utcnow,
                 job_timeout: float = 300, poll_interval: float = 1.0) -> None:
        self.name = name
        self.broker = broker
        self.options = options or QUEUE_DEFAULTS[name]
        self.clock = clock
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        # job id -> claim_count of the claims this queue handed out
        self._claims: Dict[str, int] = {}
        self.logger = setup_logger("queue")

    def add(self, payload: Any, attempts: Optional[int] = None,
            backoff_base: Optional[int] = None, recurrence: Optional[str] = None,
            delay: Union[None, float, timedelta] = None) -> str:
        """
        Add a job and return its id.

        attempts overrides the queue's max attempts, backoff_base (ms) its
        backoff base delay. With delay the job starts Delayed. With
        recurrence (a cron pattern) the rule is registered once and the id
        of its pending occurrence is returned.
        """
        payload = coerce_payload(self.name, payload)
        max_attempts = attempts if attempts is not None else self.options.max_attempts
        if max_attempts < 1:
            raise InvalidPayload(f"attempts must be >= 1, got {max_attempts}")
        backoff = BackoffPolicy(base_delay_ms=backoff_base) if backoff_base is not None else self.options.backoff
        now = self.clock()

        if recurrence:
            return self._add_recurring(payload.to_dict(), recurrence, max_attempts, backoff, now)

        delay_td = _as_timedelta(delay)
        delayed = delay_td > timedelta(0)
        job = Job(
            id=self.broker.next_job_id(self.name),
            queue=self.name,
            name=self.options.job_name,
            payload=payload,
            state=JobState.DELAYED if delayed else JobState.WAITING,
            max_attempts=max_attempts,
            backoff=backoff,
            created_at=now,
            next_run_at=now + delay_td if delayed else None,
        )
        self.broker.add_job(job)
        return job.id

    enqueue = add

    def _add_recurring(self, payload: Dict[str, Any], pattern: str, max_attempts: int,
                       backoff: BackoffPolicy, now: datetime) -> str:
        rule = RepeatRule.create(
            queue=self.name,
            name=self.options.job_name,
            pattern=pattern,
            payload=payload,
            max_attempts=max_attempts,
            backoff_base_ms=backoff.base_delay_ms,
            now=now,
        )
        if self.broker.register_repeat(self.name, rule.key, rule.to_json()):
            self.logger.info(f"Registered recurrence '{pattern}' on {self.name.value} (key {rule.key})")
        else:
            rule = RepeatRule.from_json(self.broker.get_repeat_rules(self.name)[rule.key])

        # The scheduler also creates this occurrence; whoever is first wins
        if rule.next_slot_ms > to_ms(now):
            self.broker.add_job(rule.build_occurrence(rule.next_slot_ms, now), only_new=True)
        return rule.occurrence_id(rule.next_slot_ms)

    def dequeue_next(self) -> Optional[Job]:
        """Claim the next Waiting job, or None if nothing is eligible (non-blocking)"""
        now = self.clock()
        lease_until = now + timedelta(seconds=self.job_timeout)
        job = self.broker.claim_next(self.name, to_ms(now), to_ms(lease_until))
        if job is not None:
            self._claims[job.id] = job.claim_count
        return job

    try_dequeue = dequeue_next

    def await_next(self, timeout: Optional[float] = None,
                   stop_event: Optional[threading.Event] = None) -> Optional[Job]:
        """Poll until a job is claimed, the timeout elapses, or stop_event is set"""
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            job = self.dequeue_next()
            if job is not None:
                return job
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            if stop_event is not None:
                if stop_event.wait(wait):
                    return None
            else:
                time.sleep(wait)

    def report_success(self, job: Union[Job, str], result: Any = None) -> None:
        """Active -> Completed, then trim completed jobs beyond retention"""
        current, claim = self._claimed_job(job)
        now = self.clock()
        self.broker.complete(self.name, current.id, to_ms(now), claim, _encode_result(result))
        self._claims.pop(current.id, None)
        self.apply_retention(JobState.COMPLETED, now)

    def report_failure(self, job: Union[Job, str], error: Union[str, BaseException]) -> Optional[datetime]:
        """
        Record a failed attempt. Returns the retry time when attempts remain,
        None when the job has been marked Failed.
        """
        current, claim = self._claimed_job(job)
        job_id = current.id
        now = self.clock()
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        attempts = current.attempts_made + 1

        if attempts < current.max_attempts:
            run_at = now + current.backoff.delay_for(attempts)
            self.broker.retry_later(self.name, job_id, to_ms(now), claim, to_ms(run_at), message)
            self._claims.pop(job_id, None)
            return run_at

        self.broker.fail(self.name, job_id, to_ms(now), claim, message)
        self._claims.pop(job_id, None)
        self.logger.error(f"Job {job_id} on {self.name.value} failed permanently after {attempts} attempt(s): {message}")
        self.apply_retention(JobState.FAILED, now)
        return None

    def _claimed_job(self, job: Union[Job, str]) -> Tuple[Job, int]:
        """
        Resolve a report target to the stored job and the claim it reports for.

        A Job carries its own claim_count; a bare id uses the claim this
        queue handed out for it.
        """
        if isinstance(job, Job):
            job_id, claim = job.id, job.claim_count
        else:
            job_id, claim = job, self._claims.get(job)
        current = self.broker.get_job(self.name, job_id)
        if current is None:
            raise JobNotFoundException(f"Job '{job_id}' not found in queue '{self.name.value}'")
        if current.state is not JobState.ACTIVE:
            raise InvalidJobStateException(
                f"Cannot report job '{job_id}': expected state 'active', got '{current.state.value}'"
            )
        if claim is None:
            raise InvalidJobStateException(
                f"Job '{job_id}' was not claimed through this queue; report it with the claimed Job"
            )
        if current.claim_count != claim:
            raise InvalidJobStateException(
                f"Job '{job_id}' was claimed again after its lease expired"
            )
        return current, claim

    def apply_retention(self, state: JobState, now: Optional[datetime] = None) -> int:
        """Evict terminal jobs beyond the queue's ceiling for that state"""
        policy = self.options.remove_on_complete if state is JobState.COMPLETED else self.options.remove_on_fail
        return self.broker.trim(self.name, state, policy, to_ms(now or self.clock()))

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID"""
        return self.broker.get_job(self.name, job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> List[Job]:
        """List jobs, optionally filtered by state"""
        return self.broker.list_jobs(self.name, state)

    def get_counts(self) -> Dict[str, int]:
        """Return counts by state"""
        return self.broker.get_job_counts(self.name)

    def get_repeat_rules(self) -> List[RepeatRule]:
        return [RepeatRule.from_json(raw) for raw in self.broker.get_repeat_rules(self.name).values()]


def _as_timedelta(delay: Union[None, float, timedelta]) -> timedelta:
    if delay is None:
        return timedelta(0)
    if isinstance(delay, timedelta):
        return delay
    return timedelta(seconds=delay)


def _encode_result(result: Any) -> Optional[str]:
    if result is None:
        return None
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
