"""Redis broker implementation with atomic job transitions"""

from typing import Any, Dict, List, Optional, Tuple

from ventureq.broker.base import BrokerInterface
from ventureq.broker.connection import BrokerConnection
from ventureq.exceptions import InvalidJobStateException, InvalidPayload, JobNotFoundException
from ventureq.models import Job, JobState, QueueName, RetentionPolicy
from ventureq.utils import setup_logger
from ventureq.utils.timeutil import from_ms, to_ms


STALLED_REASON = "job stalled more than allowable limit"

# Raised by Job.from_hash on a record it cannot read back
DECODE_ERRORS = (KeyError, TypeError, ValueError, InvalidPayload)


class RedisBroker(BrokerInterface):
    """
    Redis-backed broker.

    Key layout per queue (``<prefix>:<queue>:...``):
      job:<id>   hash   job record
      wait       list   Waiting ids, LPUSH on arrival, RPOP on claim
      delayed    zset   Delayed ids scored by next_run_at
      active     zset   Active ids scored by lease expiry
      completed  zset   Completed ids scored by finished_at
      failed     zset   Failed ids scored by finished_at
      repeat     hash   recurrence rules by key
      events     stream lifecycle events
      id         string job id counter

    Multi-key transitions run as WATCH/MULTI/EXEC transactions via
    ``Redis.transaction``, which retries on WatchError. A transition that
    loses a race sees the new state on retry and backs off.
    """

    def __init__(self, connection: BrokerConnection, prefix: str = "ventureq",
                 event_maxlen: int = 10000) -> None:
        self.connection = connection
        self.prefix = prefix
        self.event_maxlen = event_maxlen
        self.logger = setup_logger("broker")

    def _key(self, queue: QueueName, suffix: str) -> str:
        return f"{self.prefix}:{queue.value}:{suffix}"

    def _job_key(self, queue: QueueName, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    def _terminal_key(self, queue: QueueName, state: JobState) -> str:
        if not state.is_terminal:
            raise ValueError(f"Not a terminal state: {state.value}")
        return self._key(queue, state.value)

    def _event(self, pipe: Any, queue: QueueName, event: str, job_id: str,
               timestamp_ms: int, **data: Any) -> None:
        """Queue an XADD on the pipeline so the event commits with its transition"""
        fields = {
            'event': event,
            'job_id': job_id,
            'queue': queue.value,
            'timestamp': str(timestamp_ms),
        }
        fields.update({k: str(v) for k, v in data.items() if v is not None})
        pipe.xadd(self._key(queue, 'events'), fields, maxlen=self.event_maxlen, approximate=True)

    @staticmethod
    def _require_claim(job_id: str, values: List[Optional[str]], claim: int) -> int:
        """Check the job is still Active under the given claim; returns attempts made so far"""
        state, claim_count, attempts = values
        if state is None:
            raise JobNotFoundException(f"Job '{job_id}' not found in queue")
        if state != JobState.ACTIVE.value:
            raise InvalidJobStateException(
                f"Cannot report job '{job_id}': expected state 'active', got '{state}'"
            )
        if int(claim_count or 0) != claim:
            raise InvalidJobStateException(
                f"Job '{job_id}' was claimed again (claim {claim_count}, reported claim {claim})"
            )
        return int(attempts or 0)

    def _read_claim(self, pipe: Any, job_key: str, job_id: str, claim: int) -> int:
        return self._require_claim(job_id, pipe.hmget(job_key, ['state', 'claim_count', 'attempts_made']), claim)

    def next_job_id(self, queue: QueueName) -> str:
        with self.connection.guard() as client:
            return str(client.incr(self._key(queue, 'id')))

    def add_job(self, job: Job, only_new: bool = False) -> bool:
        """Insert a job as Waiting, or Delayed when it carries next_run_at"""
        job_key = self._job_key(job.queue, job.id)

        def _add(pipe: Any) -> bool:
            if only_new and pipe.exists(job_key):
                return False
            pipe.multi()
            pipe.hset(job_key, mapping=job.to_hash())
            extra: Dict[str, Any] = {'state': job.state.value}
            if job.state is JobState.DELAYED:
                run_at_ms = to_ms(job.next_run_at)
                pipe.zadd(self._key(job.queue, 'delayed'), {job.id: run_at_ms})
                extra['next_run_at'] = run_at_ms
            else:
                pipe.lpush(self._key(job.queue, 'wait'), job.id)
            self._event(pipe, job.queue, 'enqueued', job.id, to_ms(job.created_at), **extra)
            return True

        with self.connection.guard() as client:
            return client.transaction(_add, job_key, value_from_callable=True)

    def claim_next(self, queue: QueueName, now_ms: int, lease_until_ms: int) -> Optional[Job]:
        """
        Atomically claim the oldest Waiting job.

        Each claim bumps the job's claim_count; reports must quote it, so a
        worker whose lease expired cannot settle a later claim. A record
        that cannot be decoded is moved to Failed instead of being handed out.
        """
        wait_key = self._key(queue, 'wait')

        def _claim(pipe: Any) -> Tuple[str, Any]:
            job_id = pipe.lindex(wait_key, -1)
            if job_id is None:
                return 'empty', None
            job_key = self._job_key(queue, job_id)
            pipe.watch(job_key)
            data = pipe.hgetall(job_key)
            if not data:
                # Record evicted while its id was still listed
                pipe.multi()
                pipe.rpop(wait_key)
                return 'skipped', job_id
            try:
                job = Job.from_hash(data)
            except DECODE_ERRORS as e:
                reason = f"Unreadable job record: {e}"
                pipe.multi()
                pipe.rpop(wait_key)
                pipe.zadd(self._key(queue, 'failed'), {job_id: now_ms})
                pipe.hset(job_key, mapping={
                    'state': JobState.FAILED.value,
                    'finished_at': now_ms,
                    'failed_reason': reason,
                })
                self._event(pipe, queue, 'failed', job_id, now_ms, reason=reason)
                return 'unreadable', reason

            job.state = JobState.ACTIVE
            job.processed_at = from_ms(now_ms)
            job.claim_count += 1
            pipe.multi()
            pipe.rpop(wait_key)
            pipe.zadd(self._key(queue, 'active'), {job_id: lease_until_ms})
            pipe.hset(job_key, mapping={
                'state': JobState.ACTIVE.value,
                'processed_at': now_ms,
                'claim_count': job.claim_count,
            })
            self._event(pipe, queue, 'active', job_id, now_ms)
            return 'claimed', job

        with self.connection.guard() as client:
            while True:
                outcome, value = client.transaction(_claim, wait_key, value_from_callable=True)
                if outcome == 'claimed':
                    return value
                if outcome == 'empty':
                    return None
                if outcome == 'unreadable':
                    self.logger.error(f"Moved unreadable job on {queue.value} to failed: {value}")

    def complete(self, queue: QueueName, job_id: str, now_ms: int,
                 claim: int, result: Optional[str] = None) -> None:
        job_key = self._job_key(queue, job_id)

        def _complete(pipe: Any) -> None:
            attempts = self._read_claim(pipe, job_key, job_id, claim) + 1
            mapping: Dict[str, Any] = {
                'state': JobState.COMPLETED.value,
                'attempts_made': attempts,
                'finished_at': now_ms,
            }
            if result is not None:
                mapping['result'] = result
            pipe.multi()
            pipe.zrem(self._key(queue, 'active'), job_id)
            pipe.zadd(self._key(queue, 'completed'), {job_id: now_ms})
            pipe.hset(job_key, mapping=mapping)
            self._event(pipe, queue, 'completed', job_id, now_ms,
                        attempts_made=attempts, result=result)

        with self.connection.guard() as client:
            client.transaction(_complete, job_key)

    def retry_later(self, queue: QueueName, job_id: str, now_ms: int,
                    claim: int, run_at_ms: int, error: str) -> None:
        job_key = self._job_key(queue, job_id)

        def _retry(pipe: Any) -> None:
            attempts = self._read_claim(pipe, job_key, job_id, claim) + 1
            pipe.multi()
            pipe.zrem(self._key(queue, 'active'), job_id)
            pipe.zadd(self._key(queue, 'delayed'), {job_id: run_at_ms})
            pipe.hset(job_key, mapping={
                'state': JobState.DELAYED.value,
                'attempts_made': attempts,
                'next_run_at': run_at_ms,
                'failed_reason': error,
            })
            self._event(pipe, queue, 'delayed', job_id, now_ms,
                        attempts_made=attempts, reason=error,
                        next_run_at=run_at_ms, delay_ms=run_at_ms - now_ms)

        with self.connection.guard() as client:
            client.transaction(_retry, job_key)

    def fail(self, queue: QueueName, job_id: str, now_ms: int,
             claim: int, error: str) -> None:
        job_key = self._job_key(queue, job_id)

        def _fail(pipe: Any) -> None:
            attempts = self._read_claim(pipe, job_key, job_id, claim) + 1
            pipe.multi()
            pipe.zrem(self._key(queue, 'active'), job_id)
            pipe.zadd(self._key(queue, 'failed'), {job_id: now_ms})
            pipe.hset(job_key, mapping={
                'state': JobState.FAILED.value,
                'attempts_made': attempts,
                'finished_at': now_ms,
                'failed_reason': error,
            })
            self._event(pipe, queue, 'failed', job_id, now_ms,
                        attempts_made=attempts, reason=error)

        with self.connection.guard() as client:
            client.transaction(_fail, job_key)

    def promote_due(self, queue: QueueName, now_ms: int, limit: int = 1000) -> List[str]:
        delayed_key = self._key(queue, 'delayed')
        wait_key = self._key(queue, 'wait')
        promoted = []

        with self.connection.guard() as client:
            due = client.zrangebyscore(delayed_key, '-inf', now_ms, start=0, num=limit)
            for job_id in due:
                def _promote(pipe: Any, job_id: str = job_id) -> bool:
                    # Another scheduler may have promoted it since the range read
                    score = pipe.zscore(delayed_key, job_id)
                    if score is None or score > now_ms:
                        return False
                    pipe.multi()
                    pipe.zrem(delayed_key, job_id)
                    pipe.lpush(wait_key, job_id)
                    pipe.hset(self._job_key(queue, job_id), 'state', JobState.WAITING.value)
                    self._event(pipe, queue, 'waiting', job_id, now_ms, due_at=int(score))
                    return True

                if client.transaction(_promote, delayed_key, value_from_callable=True):
                    promoted.append(job_id)
        return promoted

    def reclaim_stalled(self, queue: QueueName, now_ms: int,
                        max_stalled: int) -> Tuple[List[str], List[str]]:
        active_key = self._key(queue, 'active')
        requeued: List[str] = []
        failed: List[str] = []

        with self.connection.guard() as client:
            expired = client.zrangebyscore(active_key, '-inf', now_ms)
            for job_id in expired:
                job_key = self._job_key(queue, job_id)

                def _reclaim(pipe: Any, job_id: str = job_id, job_key: str = job_key) -> Optional[str]:
                    score = pipe.zscore(active_key, job_id)
                    if score is None or score > now_ms:
                        return None
                    stalled_count = int(pipe.hget(job_key, 'stalled_count') or 0) + 1
                    pipe.multi()
                    pipe.zrem(active_key, job_id)
                    if stalled_count > max_stalled:
                        pipe.zadd(self._key(queue, 'failed'), {job_id: now_ms})
                        pipe.hset(job_key, mapping={
                            'state': JobState.FAILED.value,
                            'stalled_count': stalled_count,
                            'finished_at': now_ms,
                            'failed_reason': STALLED_REASON,
                        })
                        self._event(pipe, queue, 'failed', job_id, now_ms,
                                    reason=STALLED_REASON, stalled_count=stalled_count)
                        return 'failed'
                    # RPUSH puts it at the claim end of the list
                    pipe.rpush(self._key(queue, 'wait'), job_id)
                    pipe.hset(job_key, mapping={
                        'state': JobState.WAITING.value,
                        'stalled_count': stalled_count,
                    })
                    self._event(pipe, queue, 'stalled', job_id, now_ms, stalled_count=stalled_count)
                    return 'waiting'

                outcome = client.transaction(_reclaim, active_key, job_key, value_from_callable=True)
                if outcome == 'waiting':
                    requeued.append(job_id)
                elif outcome == 'failed':
                    failed.append(job_id)
        return requeued, failed

    def trim(self, queue: QueueName, state: JobState, policy: RetentionPolicy, now_ms: int) -> int:
        if policy.count is None and policy.age is None:
            return 0
        set_key = self._terminal_key(queue, state)

        def _trim(pipe: Any) -> int:
            doomed = set()
            if policy.age is not None:
                cutoff = now_ms - int(policy.age.total_seconds() * 1000)
                doomed.update(pipe.zrangebyscore(set_key, '-inf', f"({cutoff}"))
            if policy.count is not None:
                total = pipe.zcard(set_key)
                if total > policy.count:
                    doomed.update(pipe.zrange(set_key, 0, total - policy.count - 1))
            if not doomed:
                return 0
            pipe.multi()
            pipe.zrem(set_key, *doomed)
            pipe.delete(*[self._job_key(queue, job_id) for job_id in doomed])
            return len(doomed)

        with self.connection.guard() as client:
            return client.transaction(_trim, set_key, value_from_callable=True)

    def register_repeat(self, queue: QueueName, key: str, rule: str) -> bool:
        with self.connection.guard() as client:
            return bool(client.hsetnx(self._key(queue, 'repeat'), key, rule))

    def get_repeat_rules(self, queue: QueueName) -> Dict[str, str]:
        with self.connection.guard() as client:
            return client.hgetall(self._key(queue, 'repeat'))

    def advance_repeat(self, queue: QueueName, key: str, expected: str, new: str) -> bool:
        repeat_key = self._key(queue, 'repeat')

        def _advance(pipe: Any) -> bool:
            if pipe.hget(repeat_key, key) != expected:
                return False
            pipe.multi()
            pipe.hset(repeat_key, key, new)
            return True

        with self.connection.guard() as client:
            return client.transaction(_advance, repeat_key, value_from_callable=True)

    def get_job(self, queue: QueueName, job_id: str) -> Optional[Job]:
        with self.connection.guard() as client:
            data = client.hgetall(self._job_key(queue, job_id))
        return Job.from_hash(data) if data else None

    def _ids_in_state(self, client: Any, queue: QueueName, state: JobState) -> List[str]:
        if state is JobState.WAITING:
            # Claim end of the list first
            return list(reversed(client.lrange(self._key(queue, 'wait'), 0, -1)))
        if state.is_terminal:
            return client.zrevrange(self._key(queue, state.value), 0, -1)
        return client.zrange(self._key(queue, state.value), 0, -1)

    def list_jobs(self, queue: QueueName, state: Optional[JobState] = None) -> List[Job]:
        states = [state] if state else list(JobState)
        with self.connection.guard() as client:
            ids = []
            for s in states:
                ids.extend(self._ids_in_state(client, queue, s))
            if not ids:
                return []
            pipe = client.pipeline(transaction=False)
            for job_id in ids:
                pipe.hgetall(self._job_key(queue, job_id))
            rows = pipe.execute()
        jobs = []
        for job_id, row in zip(ids, rows):
            # A job evicted between the two reads comes back empty
            if not row:
                continue
            try:
                jobs.append(Job.from_hash(row))
            except DECODE_ERRORS as e:
                self.logger.warning(f"Skipping unreadable job {job_id} on {queue.value}: {e}")
        return jobs

    def get_job_counts(self, queue: QueueName) -> Dict[str, int]:
        with self.connection.guard() as client:
            pipe = client.pipeline(transaction=False)
            pipe.llen(self._key(queue, 'wait'))
            for state in (JobState.DELAYED, JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED):
                pipe.zcard(self._key(queue, state.value))
            waiting, delayed, active, completed, failed = pipe.execute()
        return {
            JobState.WAITING.value: waiting,
            JobState.DELAYED.value: delayed,
            JobState.ACTIVE.value: active,
            JobState.COMPLETED.value: completed,
            JobState.FAILED.value: failed,
        }

    def read_events(self, queue: QueueName, last_id: str = '0', count: Optional[int] = None,
                    block_ms: Optional[int] = None) -> List[Tuple[str, Dict[str, str]]]:
        events_key = self._key(queue, 'events')
        with self.connection.guard() as client:
            response = client.xread({events_key: last_id}, count=count, block=block_ms)
        if not response:
            return []
        # RESP3 replies are keyed by stream name, RESP2 replies are [name, entries] pairs
        streams = response.items() if isinstance(response, dict) else response
        entries: List[Tuple[str, Dict[str, str]]] = []
        for _name, stream_entries in streams:
            entries.extend((entry_id, fields) for entry_id, fields in stream_entries)
        return entries

    def recent_events(self, queue: QueueName, count: int = 100) -> List[Tuple[str, Dict[str, str]]]:
        with self.connection.guard() as client:
            return client.xrevrange(self._key(queue, 'events'), count=count)

    def event_history(self, queue: QueueName) -> List[Tuple[str, Dict[str, str]]]:
        """Every retained event, oldest first"""
        with self.connection.guard() as client:
            return client.xrange(self._key(queue, 'events'))
