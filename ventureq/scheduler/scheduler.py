"""Delay/repeat engine: promotes due jobs, spawns recurrences, reclaims stalls"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ventureq.broker import BrokerConnection, BrokerInterface
from ventureq.config import Config
from ventureq.exceptions import QueueUnavailable
from ventureq.models import JobState, QueueName
from ventureq.scheduler.repeat import RepeatRule
from ventureq.utils import setup_logger, to_ms, utcnow

if TYPE_CHECKING:
    from ventureq.queue import Queue


@dataclass
class TickResult:
    """What one scheduling pass changed, per queue"""
    promoted: Dict[QueueName, List[str]] = field(default_factory=dict)
    spawned: Dict[QueueName, List[str]] = field(default_factory=dict)
    requeued: Dict[QueueName, List[str]] = field(default_factory=dict)
    stalled_failed: Dict[QueueName, List[str]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return any(ids for part in (self.promoted, self.spawned, self.requeued, self.stalled_failed)
                   for ids in part.values())

    def summary(self) -> str:
        def total(part: Dict[QueueName, List[str]]) -> int:
            return sum(len(ids) for ids in part.values())
        return (f"promoted={total(self.promoted)} spawned={total(self.spawned)} "
                f"requeued={total(self.requeued)} stalled_failed={total(self.stalled_failed)}")


class Scheduler:
    """
    Time-driven half of the queue system.

    Each tick, per queue:
      1. Active jobs whose lease expired go back to Waiting (or to Failed
         once they have stalled more than max_stalled_count times).
      2. Every recurrence rule is walked forward slot by slot until its
         cursor is in the future, creating one occurrence per slot. A
         scheduler that was down catches up on every missed slot.
      3. Delayed jobs with next_run_at <= now move to Waiting.

    All three steps are idempotent, so several schedulers may tick the
    same queues concurrently and a restarted scheduler never duplicates
    work.
    """

    def __init__(self, queues: Dict[QueueName, 'Queue'], broker: BrokerInterface,
                 connection: BrokerConnection, config: Config,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.queues = queues
        self.broker = broker
        self.connection = connection
        self.config = config
        self.clock = clock
        self.logger = setup_logger("scheduler")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one scheduling pass over every queue"""
        now = now or self.clock()
        now_ms = to_ms(now)
        result = TickResult()

        for name, queue in self.queues.items():
            requeued, failed = self.broker.reclaim_stalled(name, now_ms, self.config.max_stalled_count)
            for job_id in requeued:
                self.logger.warning(f"Job {job_id} on {name.value} stalled; returned to waiting")
            for job_id in failed:
                self.logger.error(f"Job {job_id} on {name.value} stalled too many times; marked failed")
            if failed:
                queue.apply_retention(JobState.FAILED, now)

            result.requeued[name] = requeued
            result.stalled_failed[name] = failed
            result.spawned[name] = self._spawn_recurrences(name, now)
            result.promoted[name] = self.broker.promote_due(name, now_ms)

        return result

    def _spawn_recurrences(self, queue: QueueName, now: datetime) -> List[str]:
        spawned: List[str] = []
        for raw in self.broker.get_repeat_rules(queue).values():
            spawned.extend(self._walk_rule(queue, raw, now))
        return spawned

    def _walk_rule(self, queue: QueueName, raw: str, now: datetime) -> List[str]:
        now_ms = to_ms(now)
        spawned: List[str] = []
        while True:
            rule = RepeatRule.from_json(raw)
            occurrence = rule.build_occurrence(rule.next_slot_ms, now)
            if self.broker.add_job(occurrence, only_new=True):
                spawned.append(occurrence.id)
            if rule.next_slot_ms > now_ms:
                return spawned

            # Slot reached: hand the cursor to the following slot
            advanced = rule.advanced()
            new_raw = advanced.to_json()
            if self.broker.advance_repeat(queue, rule.key, raw, new_raw):
                raw = new_raw
                continue

            # Another scheduler moved the cursor first; continue from its state
            current = self.broker.get_repeat_rules(queue).get(rule.key)
            if current is None:
                return spawned
            raw = current

    def start(self) -> None:
        """Tick every scheduler_tick_interval seconds on a daemon thread"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="ventureq-scheduler", daemon=True)
        self._thread.start()

    def run_forever(self) -> None:
        """Tick until stop() is called; survives broker outages"""
        self.logger.info(f"Scheduler started (tick every {self.config.scheduler_tick_interval}s)")
        while not self._stop.is_set():
            try:
                result = self.tick()
                if result.changed:
                    self.logger.info(f"Tick: {result.summary()}")
            except QueueUnavailable as e:
                self.logger.warning(f"Scheduler paused: {e}")
                if not self.connection.wait_until_available(self._stop):
                    break
                continue
            except Exception as e:
                self.logger.error(f"Unexpected scheduler error: {e}", exc_info=True)
            self._stop.wait(self.config.scheduler_tick_interval)
        self.logger.info("Scheduler stopped")

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal the tick loop to exit and wait for it"""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning("Scheduler thread did not stop within timeout")
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
