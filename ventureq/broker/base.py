"""Abstract broker interface"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ventureq.models import Job, JobState, QueueName, RetentionPolicy


class BrokerInterface(ABC):
    """
    Atomic job-lifecycle primitives shared by queues, workers and the scheduler.

    Every state transition is atomic with respect to concurrent callers in
    other processes. Timestamps are passed in as epoch milliseconds so the
    caller's clock is the single source of time.
    """

    @abstractmethod
    def next_job_id(self, queue: QueueName) -> str:
        """Allocate a fresh job id for the queue"""
        pass

    @abstractmethod
    def add_job(self, job: Job, only_new: bool = False) -> bool:
        """Store a Waiting or Delayed job; with only_new, skip (False) if the id exists"""
        pass

    @abstractmethod
    def claim_next(self, queue: QueueName, now_ms: int, lease_until_ms: int) -> Optional[Job]:
        """Atomically move the oldest Waiting job to Active under a fresh claim_count"""
        pass

    @abstractmethod
    def complete(self, queue: QueueName, job_id: str, now_ms: int,
                 claim: int, result: Optional[str] = None) -> None:
        """Active -> Completed, if claim is still the current claim_count"""
        pass

    @abstractmethod
    def retry_later(self, queue: QueueName, job_id: str, now_ms: int,
                    claim: int, run_at_ms: int, error: str) -> None:
        """Active -> Delayed after a failed attempt"""
        pass

    @abstractmethod
    def fail(self, queue: QueueName, job_id: str, now_ms: int,
             claim: int, error: str) -> None:
        """Active -> Failed, permanently"""
        pass

    @abstractmethod
    def promote_due(self, queue: QueueName, now_ms: int, limit: int = 1000) -> List[str]:
        """Delayed -> Waiting for every job due at now_ms; each job promoted once"""
        pass

    @abstractmethod
    def reclaim_stalled(self, queue: QueueName, now_ms: int,
                        max_stalled: int) -> Tuple[List[str], List[str]]:
        """Return expired-lease Active jobs to Waiting (or Failed); returns (requeued, failed)"""
        pass

    @abstractmethod
    def trim(self, queue: QueueName, state: JobState, policy: RetentionPolicy, now_ms: int) -> int:
        """Evict terminal jobs beyond the retention ceiling; returns count evicted"""
        pass

    @abstractmethod
    def register_repeat(self, queue: QueueName, key: str, rule: str) -> bool:
        """Store a recurrence rule unless one with the same key exists"""
        pass

    @abstractmethod
    def get_repeat_rules(self, queue: QueueName) -> Dict[str, str]:
        """All recurrence rules of the queue, by key"""
        pass

    @abstractmethod
    def advance_repeat(self, queue: QueueName, key: str, expected: str, new: str) -> bool:
        """Compare-and-set a recurrence rule"""
        pass

    @abstractmethod
    def get_job(self, queue: QueueName, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID"""
        pass

    @abstractmethod
    def list_jobs(self, queue: QueueName, state: Optional[JobState] = None) -> List[Job]:
        """List jobs, optionally filtered by state"""
        pass

    @abstractmethod
    def get_job_counts(self, queue: QueueName) -> Dict[str, int]:
        """Get count of jobs by state"""
        pass

    @abstractmethod
    def read_events(self, queue: QueueName, last_id: str = '0', count: Optional[int] = None,
                    block_ms: Optional[int] = None) -> List[Tuple[str, Dict[str, str]]]:
        """Events appended after last_id, oldest first"""
        pass

    @abstractmethod
    def recent_events(self, queue: QueueName, count: int = 100) -> List[Tuple[str, Dict[str, str]]]:
        """Most recent events, newest first"""
        pass

    @abstractmethod
    def event_history(self, queue: QueueName) -> List[Tuple[str, Dict[str, str]]]:
        """Every retained event, oldest first"""
        pass
