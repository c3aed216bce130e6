"""CLI interface using Click"""

import os
import signal
from dataclasses import asdict
from datetime import datetime
from typing import Optional

import click

from ventureq.config import Config
from ventureq.events import JobEvent
from ventureq.exceptions import VentureQException
from ventureq.models import JobState, QueueName, Source
from ventureq.service import SchedulingService
from ventureq.worker import WorkerPool
from ventureq.worker.pool import PID_FILE


QUEUE_CHOICES = [name.value for name in QueueName]
STATE_CHOICES = [state.value for state in JobState]


def open_service(run_scheduler: bool = False) -> SchedulingService:
    """Service for a single CLI command; schedulers are started explicitly"""
    return SchedulingService(Config.load(), run_scheduler=run_scheduler).open()


def _fmt(ts: Optional[datetime]) -> str:
    return ts.strftime('%Y-%m-%d %H:%M:%S') if ts else '-'


@click.group()
def cli() -> None:
    """ventureq - background jobs for opportunity detection, launches and metrics"""
    pass


@cli.group()
def enqueue() -> None:
    """Enqueue jobs"""
    pass


@enqueue.command('opportunity')
@click.option('--source', 'sources', multiple=True, required=True,
              type=click.Choice([s.value for s in Source]), help='Trend source (repeatable)')
@click.option('--force-refresh', is_flag=True, help='Ignore cached results')
def enqueue_opportunity(sources: tuple, force_refresh: bool) -> None:
    """
    Register the 6-hourly opportunity detection run

    Example: ventureq enqueue opportunity --source reddit --source product_hunt
    """
    try:
        with open_service() as service:
            job_id = service.enqueue_opportunity_detection(sources, force_refresh=force_refresh)
            job = service.queue(QueueName.OPPORTUNITY_DETECTION).get_job(job_id)
        when = f", next run {_fmt(job.next_run_at)} UTC" if job and job.next_run_at else ""
        click.echo(f"Scheduled opportunity detection every 6 hours (job {job_id}{when})")
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@enqueue.command('launch-step')
@click.argument('business_id')
@click.argument('user_id')
@click.argument('step', type=int)
def enqueue_launch_step(business_id: str, user_id: str, step: int) -> None:
    """
    Enqueue a business launch step (1-8)

    Example: ventureq enqueue launch-step b1 u1 3
    """
    try:
        with open_service() as service:
            job_id = service.enqueue_business_launch_step(business_id, user_id, step)
        click.echo(f"Enqueued launch step {step} for business {business_id} (job {job_id})")
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@enqueue.command('metrics')
@click.argument('business_id')
@click.argument('date')
def enqueue_metrics(business_id: str, date: str) -> None:
    """
    Enqueue a metrics aggregation for one day

    Example: ventureq enqueue metrics b1 2024-05-01
    """
    try:
        with open_service() as service:
            job_id = service.enqueue_metrics_aggregation(business_id, date)
        click.echo(f"Enqueued metrics aggregation for business {business_id} on {date} (job {job_id})")
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@cli.command()
def status() -> None:
    """
    Show queue status

    Example: ventureq status
    """
    try:
        with open_service() as service:
            stats = {name: queue.get_counts() for name, queue in service.queues.items()}

        click.echo("=== Queue Status ===")
        click.echo(f"{'Queue':24} {'Waiting':>8} {'Delayed':>8} {'Active':>8} {'Done':>8} {'Failed':>8}")
        for name, counts in stats.items():
            click.echo(f"{name.value:24} {counts['waiting']:>8} {counts['delayed']:>8} "
                       f"{counts['active']:>8} {counts['completed']:>8} {counts['failed']:>8}")
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@cli.command('list')
@click.option('--queue', 'queue_name', type=click.Choice(QUEUE_CHOICES), help='Filter by queue')
@click.option('--state', type=click.Choice(STATE_CHOICES), help='Filter by state')
def list_jobs(queue_name: Optional[str], state: Optional[str]) -> None:
    """
    List jobs

    Example: ventureq list --queue metrics-aggregation --state failed
    """
    try:
        state_enum = JobState(state) if state else None
        with open_service() as service:
            names = [QueueName(queue_name)] if queue_name else list(QueueName)
            jobs = [job for name in names for job in service.queue(name).list_jobs(state_enum)]

        if not jobs:
            click.echo("No jobs found")
            return

        for job in jobs:
            click.echo(f"[{job.queue.value}:{job.id}] {job.name} {job.payload.to_dict()}")
            click.echo(f"  State: {job.state.value} | Attempts: {job.attempts_made}/{job.max_attempts}"
                       f" | Created: {_fmt(job.created_at)}")
            if job.next_run_at and job.state is JobState.DELAYED:
                click.echo(f"  Next run: {_fmt(job.next_run_at)}")
            if job.failed_reason:
                click.echo(f"  Error: {job.failed_reason}")
            click.echo()
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@cli.command()
@click.argument('queue_name', type=click.Choice(QUEUE_CHOICES))
@click.option('--recent', default=10, help='Number of recent events to show')
@click.option('--follow', is_flag=True, help='Keep printing new events (Ctrl+C to stop)')
def events(queue_name: str, recent: int, follow: bool) -> None:
    """
    Show lifecycle events of a queue

    Example: ventureq events business-launch-step --recent 20
    """
    try:
        with open_service() as service:
            name = QueueName(queue_name)
            for event in reversed(service.events.recent(name, recent)):
                _echo_event(event)
            if follow:
                for event in service.events.listen(name):
                    _echo_event(event)
    except KeyboardInterrupt:
        pass
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


def _echo_event(event: JobEvent) -> None:
    timestamp = event.timestamp.strftime('%H:%M:%S')
    click.echo(f"  [{timestamp}] {event.job_id[:40]:40} - {event.event.value}")
    if event.data.get('reason'):
        click.echo(f"            Error: {event.data['reason'][:60]}")


@cli.group()
def worker() -> None:
    """Worker management commands"""
    pass


@worker.command()
@click.option('--count', default=1, help='Number of workers to start')
@click.option('--handlers', 'handlers_path', required=True,
              help="Handler mapping as 'module:attribute'")
def start(count: int, handlers_path: str) -> None:
    """
    Start worker processes

    Example: ventureq worker start --count 3 --handlers myapp.jobs:HANDLERS
    """
    try:
        pool = WorkerPool(Config.load(), handlers_path, count)
        click.echo(f"Starting {count} worker(s)... (Press Ctrl+C to stop)")
        pool.start()
    except KeyboardInterrupt:
        click.echo("\nStopping workers...")
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


@worker.command()
def stop() -> None:
    """
    Stop running workers gracefully

    Example: ventureq worker stop
    """
    if not PID_FILE.exists():
        click.echo("No workers running")
        return

    with open(PID_FILE) as f:
        pids = [int(line.strip()) for line in f if line.strip()]

    for pid in pids:
        try:
            os.kill(pid, signal.SIGTERM)
            click.echo(f"Sent SIGTERM to worker {pid}")
        except ProcessLookupError:
            click.echo(f"Worker {pid} not found")
        except PermissionError:
            click.echo(f"Permission denied for worker {pid}")

    PID_FILE.unlink()


@cli.group()
def scheduler() -> None:
    """Scheduler commands"""
    pass


@scheduler.command('start')
def scheduler_start() -> None:
    """
    Run the scheduler in the foreground (promotes due jobs, spawns recurrences)

    Example: ventureq scheduler start
    """
    try:
        service = open_service()
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)
        return

    sched = service.scheduler
    signal.signal(signal.SIGTERM, lambda s, f: sched.stop(timeout=0))
    click.echo("Scheduler running... (Press Ctrl+C to stop)")
    try:
        sched.run_forever()
    except KeyboardInterrupt:
        click.echo("\nStopping scheduler...")
    finally:
        service.shutdown()


@cli.group()
def config() -> None:
    """Configuration management"""
    pass


@config.command('get')
@click.argument('key', required=False)
def config_get(key: Optional[str]) -> None:
    """
    Get configuration value(s)

    Example: ventureq config get redis-url
    """
    try:
        cfg = Config.load()

        if key:
            key = key.replace('-', '_')
            value = cfg.get(key)
            click.echo(f"{key.replace('_', '-')} = {value}")
        else:
            for k, v in asdict(cfg).items():
                click.echo(f"{k.replace('_', '-')}: {v}")

    except (ValueError, VentureQException) as e:
        click.echo(f"Error: {e}", err=True)


@config.command('set')
@click.argument('key')
@click.argument('value')
def config_set(key: str, value: str) -> None:
    """
    Set configuration value

    Example: ventureq config set job-timeout 600
    """
    try:
        cfg = Config.load()
        key = key.replace('-', '_')
        cfg.set(key, value)
        click.echo(f"Set {key.replace('_', '-')} = {cfg.get(key)}")
    except (ValueError, VentureQException) as e:
        click.echo(f"Error: {e}", err=True)


@cli.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=5000, help='Port to bind to')
@click.option('--debug', is_flag=True, help='Enable debug mode')
def web(host: str, port: int, debug: bool) -> None:
    """Start web dashboard and producer API"""
    from ventureq.web.app import run_server

    click.echo("Starting ventureq web dashboard...")
    click.echo(f"Open http://{host}:{port} in your browser")
    click.echo("Press Ctrl+C to stop\n")

    try:
        run_server(host=host, port=port, debug=debug)
    except VentureQException as e:
        click.echo(f"Error: {e}", err=True)


if __name__ == '__main__':
    cli()
