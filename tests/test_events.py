"""Tests for the lifecycle event stream"""

from ventureq.events import EventType, JobEvent
from ventureq.models import QueueName


def kinds(events):
    return [event.event for event in events]


def test_success_lifecycle_order(service):
    """Test enqueued -> active -> completed for one job"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 3)
    queue.dequeue_next()
    queue.report_success(job_id, "domain registered")

    history = service.events.history(QueueName.BUSINESS_LAUNCH_STEP, job_id)

    assert kinds(history) == [EventType.ENQUEUED, EventType.ACTIVE, EventType.COMPLETED]
    assert all(event.job_id == job_id for event in history)
    assert history[-1].data["result"] == "domain registered"
    assert history[-1].data["attempts_made"] == "1"


def test_retry_lifecycle_order(service, clock):
    """Test a failed attempt, its promotion and the final failure are all observable"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 5)

    queue.dequeue_next()
    queue.report_failure(job_id, "payment provider down")
    clock.advance(seconds=3)
    service.scheduler.tick()
    queue.dequeue_next()
    queue.report_failure(job_id, "payment provider down")

    history = service.events.history(QueueName.BUSINESS_LAUNCH_STEP, job_id)

    assert kinds(history) == [
        EventType.ENQUEUED,
        EventType.ACTIVE,
        EventType.DELAYED,
        EventType.WAITING,
        EventType.ACTIVE,
        EventType.FAILED,
    ]
    assert history[2].data["delay_ms"] == "3000"
    assert history[-1].data["reason"] == "payment provider down"


def test_events_are_per_queue(service):
    """Test each queue has its own stream"""
    service.enqueue_business_launch_step("b1", "u1", 1)
    service.enqueue_metrics_aggregation("b1", "2024-04-30")

    launch = service.events.history(QueueName.BUSINESS_LAUNCH_STEP)
    metrics = service.events.history(QueueName.METRICS_AGGREGATION)

    assert [e.queue for e in launch] == [QueueName.BUSINESS_LAUNCH_STEP]
    assert [e.queue for e in metrics] == [QueueName.METRICS_AGGREGATION]


def test_recent_is_newest_first(service):
    """Test recent() returns the latest events first and honours count"""
    first = service.enqueue_business_launch_step("b1", "u1", 1)
    second = service.enqueue_business_launch_step("b1", "u1", 2)
    third = service.enqueue_business_launch_step("b1", "u1", 3)

    recent = service.events.recent(QueueName.BUSINESS_LAUNCH_STEP, 2)

    assert [e.job_id for e in recent] == [third, second]
    assert first not in [e.job_id for e in recent]


def test_read_after_last_id(service):
    """Test read() only returns events appended after the given id"""
    queue = service.queue(QueueName.METRICS_AGGREGATION)
    job_id = service.enqueue_metrics_aggregation("b1", "2024-04-30")
    seen = service.events.read(QueueName.METRICS_AGGREGATION)
    assert kinds(seen) == [EventType.ENQUEUED]

    queue.dequeue_next()
    newer = service.events.read(QueueName.METRICS_AGGREGATION, last_id=seen[-1].id)

    assert kinds(newer) == [EventType.ACTIVE]
    assert newer[0].job_id == job_id


def test_event_timestamps_follow_clock(service, clock):
    """Test event timestamps come from the service clock"""
    service.enqueue_business_launch_step("b1", "u1", 1)

    event = service.events.recent(QueueName.BUSINESS_LAUNCH_STEP, 1)[0]

    assert event.timestamp == clock()
    assert event.to_dict()["timestamp"] == clock().isoformat()


def test_event_from_entry():
    """Test parsing a raw stream entry"""
    event = JobEvent.from_entry("1-0", {
        "event": "failed",
        "job_id": "9",
        "queue": "metrics-aggregation",
        "timestamp": "1714557600000",
        "reason": "boom",
    })

    assert event.event == EventType.FAILED
    assert event.queue == QueueName.METRICS_AGGREGATION
    assert event.data == {"reason": "boom"}
