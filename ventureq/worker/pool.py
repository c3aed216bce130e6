"""Worker loop and multiprocessing worker pool"""

import importlib
import multiprocessing as mp
from multiprocessing.synchronize import Event as EventType
import os
import signal
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ventureq.broker import BrokerConnection
from ventureq.config import Config
from ventureq.exceptions import (
    ConfigurationException,
    InvalidJobStateException,
    JobNotFoundException,
    QueueUnavailable,
)
from ventureq.models import QueueName
from ventureq.queue import Queue
from ventureq.service import SchedulingService
from ventureq.utils import setup_logger
from ventureq.worker.executor import Failure, Handler, JobExecutor


PID_FILE = Path.home() / ".ventureq" / "workers.pid"


def load_handlers(path: str) -> Dict[QueueName, Handler]:
    """
    Import a handler mapping from 'package.module:ATTRIBUTE'.

    The attribute is a dict keyed by QueueName or queue name string, or a
    zero-argument callable returning one.
    """
    module_name, _, attr = path.partition(':')
    if not module_name or not attr:
        raise ConfigurationException(f"Handlers must be given as 'module:attribute', got '{path}'")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationException(f"Cannot load handlers from '{path}': {e}") from e

    mapping = target() if callable(target) and not isinstance(target, Mapping) else target
    if not isinstance(mapping, Mapping):
        raise ConfigurationException(f"'{path}' did not provide a mapping of queue -> handler")
    return normalize_handlers(mapping)


def normalize_handlers(mapping: Mapping[Union[str, QueueName], Handler]) -> Dict[QueueName, Handler]:
    handlers = {}
    for key, handler in mapping.items():
        try:
            name = key if isinstance(key, QueueName) else QueueName(key)
        except ValueError:
            raise ConfigurationException(f"Unknown queue '{key}' in handler mapping") from None
        handlers[name] = handler
    return handlers


class Worker:
    """
    Pulls jobs from its queues, runs the matching handler and reports the
    outcome. Exactly one of report_success / report_failure is called per
    claimed job; handler errors never stop the loop.
    """

    def __init__(self, queues: Sequence[Queue], handlers: Mapping[QueueName, Handler],
                 connection: BrokerConnection, worker_id: int = 0,
                 stop_event: Optional[Any] = None, poll_interval: float = 1.0) -> None:
        self.handlers = dict(handlers)
        self.queues = [q for q in queues if q.name in self.handlers]
        self.connection = connection
        self.worker_id = worker_id
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.poll_interval = poll_interval
        self.executor = JobExecutor()
        self.jobs_processed = 0
        self.logger = setup_logger(f"worker-{worker_id}")

    def process_one(self, queue: Queue) -> bool:
        """Claim and run at most one job from queue; returns whether a job was claimed"""
        job = queue.dequeue_next()
        if job is None:
            return False

        self.logger.info(f"Processing job {job.id} on {queue.name.value} "
                         f"(attempt {job.attempts_made + 1}/{job.max_attempts})")
        outcome = self.executor.execute(self.handlers[queue.name], job)

        try:
            if isinstance(outcome, Failure):
                run_at = queue.report_failure(job, outcome.error)
                if run_at is not None:
                    self.logger.warning(f"Job {job.id} failed: {outcome.error}; retrying at {run_at.isoformat()}")
                else:
                    self.logger.error(f"Job {job.id} failed permanently: {outcome.error}")
                if outcome.detail:
                    self.logger.info(outcome.detail)
            else:
                queue.report_success(job, outcome.value)
                self.logger.info(f"Job {job.id} completed successfully")
        except (InvalidJobStateException, JobNotFoundException) as e:
            # Lease expired and the stall detector took the job back
            self.logger.warning(f"Outcome of job {job.id} discarded: {e}")

        self.jobs_processed += 1
        return True

    def run(self) -> None:
        """Loop until stop_event is set"""
        self.logger.info(f"Worker {self.worker_id} started (PID: {os.getpid()}) "
                         f"on {', '.join(q.name.value for q in self.queues)}")

        while not self.stop_event.is_set():
            try:
                claimed = False
                for queue in self.queues:
                    if self.stop_event.is_set():
                        break
                    if self.process_one(queue):
                        claimed = True
                if not claimed:
                    self.stop_event.wait(self.poll_interval)
            except QueueUnavailable as e:
                self.logger.warning(f"Broker unavailable: {e}")
                if not self.connection.wait_until_available(self.stop_event):
                    break
            except Exception as e:
                self.logger.error(f"Unexpected worker error: {e}", exc_info=True)
                self.stop_event.wait(1)

        self.logger.info(f"Worker {self.worker_id} shutting down gracefully")


def _worker_loop_func(worker_id: int, shutdown_event: EventType, handlers_path: str) -> None:
    """Module-level worker function to avoid pickle issues with bound methods"""
    config = Config.load()
    handlers = load_handlers(handlers_path)

    signal.signal(signal.SIGINT, lambda s, f: shutdown_event.set())
    signal.signal(signal.SIGTERM, lambda s, f: shutdown_event.set())

    service = SchedulingService(config, run_scheduler=False)
    service.open()
    try:
        worker = Worker(
            [service.queue(name) for name in handlers],
            handlers,
            service.connection,
            worker_id=worker_id,
            stop_event=shutdown_event,
            poll_interval=config.worker_poll_interval,
        )
        worker.run()
    finally:
        service.shutdown()


class WorkerPool:
    """Manages multiple worker processes"""

    def __init__(self, config: Config, handlers_path: str, count: int = 1):
        self.config = config
        self.handlers_path = handlers_path
        self.count = count
        self.processes: List[mp.Process] = []
        self.shutdown_event = mp.Event()
        self.logger = setup_logger("pool")

    def start(self, daemon: bool = False) -> None:
        """Start worker processes"""
        # Validate the handler path before forking
        load_handlers(self.handlers_path)

        for i in range(self.count):
            p = mp.Process(target=_worker_loop_func, args=(i, self.shutdown_event, self.handlers_path), daemon=daemon)
            p.start()
            self.processes.append(p)

        self._write_pid_file()

        if not daemon:
            self._wait_for_workers()

    def _write_pid_file(self) -> None:
        """Write worker PIDs to file for later shutdown"""
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(PID_FILE, 'w') as f:
            f.write(f"{os.getpid()}\n")
            for p in self.processes:
                f.write(f"{p.pid}\n")

    def _wait_for_workers(self) -> None:
        """Wait for all workers to complete"""
        try:
            for p in self.processes:
                p.join()
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        """Signal all workers to stop gracefully"""
        self.logger.info(f"Stopping {len(self.processes)} worker(s)...")

        self.shutdown_event.set()

        for i, p in enumerate(self.processes):
            p.join(timeout=30)
            if p.is_alive():
                self.logger.warning(f"Worker {i} did not stop gracefully, terminating...")
                p.terminate()
                p.join(timeout=5)
                if p.is_alive():
                    self.logger.error(f"Worker {i} did not terminate, killing...")
                    p.kill()

        self.logger.info("All workers stopped")
