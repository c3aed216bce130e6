"""Tests for delayed promotion, cron recurrences and stall recovery"""

import pytest
from datetime import datetime, timedelta, timezone

from ventureq.broker import STALLED_REASON
from ventureq.exceptions import ConfigurationException, InvalidJobStateException
from ventureq.models import JobState, OPPORTUNITY_RECURRENCE, QueueName
from ventureq.scheduler import RepeatRule
from ventureq.utils import to_ms


SLOT_1200 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def slot(hours_after_noon):
    return SLOT_1200 + timedelta(hours=hours_after_noon)


@pytest.fixture
def opportunity_queue(service):
    return service.queue(QueueName.OPPORTUNITY_DETECTION)


def test_repeat_rule_first_slot(clock):
    """Test the first occurrence is the next 6-hour boundary"""
    rule = RepeatRule.create(
        queue=QueueName.OPPORTUNITY_DETECTION,
        name="detect-opportunities",
        pattern=OPPORTUNITY_RECURRENCE,
        payload={"sources": ["reddit"]},
        max_attempts=3,
        backoff_base_ms=5000,
        now=clock(),
    )

    assert rule.next_slot_ms == to_ms(SLOT_1200)
    assert rule.slot_after(rule.next_slot_ms) == to_ms(slot(6))
    assert rule.advanced().advanced().next_slot_ms == to_ms(slot(12))
    assert rule.occurrence_id(rule.next_slot_ms) == f"repeat:{rule.key}:{to_ms(SLOT_1200)}"
    assert RepeatRule.from_json(rule.to_json()) == rule


def test_repeat_rule_on_boundary_starts_now():
    """Test a rule created exactly on a slot fires at that slot"""
    rule = RepeatRule.create(
        queue=QueueName.OPPORTUNITY_DETECTION,
        name="detect-opportunities",
        pattern=OPPORTUNITY_RECURRENCE,
        payload={"sources": ["reddit"]},
        max_attempts=3,
        backoff_base_ms=5000,
        now=SLOT_1200,
    )
    assert rule.next_slot_ms == to_ms(SLOT_1200)


def test_repeat_rule_rejects_bad_pattern(clock):
    """Test an invalid cron pattern is a configuration error"""
    with pytest.raises(ConfigurationException):
        RepeatRule.create(
            queue=QueueName.OPPORTUNITY_DETECTION,
            name="detect-opportunities",
            pattern="every six hours",
            payload={"sources": ["reddit"]},
            max_attempts=3,
            backoff_base_ms=5000,
            now=clock(),
        )


def test_promote_due_jobs(service, clock):
    """Test tick moves due Delayed jobs to Waiting"""
    queue = service.queue(QueueName.METRICS_AGGREGATION)
    due = queue.add({"business_id": "b1", "date": "2024-04-30"}, delay=10)
    later = queue.add({"business_id": "b2", "date": "2024-04-30"}, delay=60)

    clock.advance(seconds=10)
    result = service.scheduler.tick()

    assert result.promoted[QueueName.METRICS_AGGREGATION] == [due]
    assert queue.get_job(due).state == JobState.WAITING
    assert queue.get_job(later).state == JobState.DELAYED


def test_promotion_happens_once_across_schedulers(service, make_service, clock):
    """Test two schedulers ticking the same queue promote each job once"""
    queue = service.queue(QueueName.METRICS_AGGREGATION)
    job_id = queue.add({"business_id": "b1", "date": "2024-04-30"}, delay=5)
    other = make_service()

    clock.advance(seconds=5)
    first = service.scheduler.tick()
    second = other.scheduler.tick()

    promoted = (first.promoted[QueueName.METRICS_AGGREGATION]
                + second.promoted[QueueName.METRICS_AGGREGATION])
    assert promoted == [job_id]
    assert queue.get_counts()["waiting"] == 1
    assert queue.dequeue_next().id == job_id
    assert queue.dequeue_next() is None


def test_tick_without_work_changes_nothing(service):
    """Test an idle tick reports no changes"""
    result = service.scheduler.tick()
    assert result.changed is False


def test_recurrence_registered_once(service, opportunity_queue):
    """Test registering the same recurrence twice keeps one rule and one pending job"""
    first = service.enqueue_opportunity_detection(["reddit"])
    second = service.enqueue_opportunity_detection(["reddit"])

    assert first == second
    assert len(opportunity_queue.get_repeat_rules()) == 1
    assert opportunity_queue.get_counts()["delayed"] == 1

    job = opportunity_queue.get_job(first)
    assert job.state == JobState.DELAYED
    assert job.next_run_at == SLOT_1200
    assert job.repeat_key == opportunity_queue.get_repeat_rules()[0].key


def test_recurrence_fires_every_six_hours(service, opportunity_queue, clock):
    """Test one occurrence per slot, each claimable from its slot on"""
    service.enqueue_opportunity_detection(["reddit", "product_hunt"])
    seen = []

    for n in range(4):
        clock.set(slot(6 * n))
        service.scheduler.tick()

        job = opportunity_queue.dequeue_next()
        assert job is not None
        assert job.id.endswith(f":{to_ms(slot(6 * n))}")
        assert opportunity_queue.dequeue_next() is None
        opportunity_queue.report_success(job.id)
        seen.append(job.id)

        # Ticking again inside the same slot creates nothing new
        assert service.scheduler.tick().changed is False

    assert len(set(seen)) == 4
    assert opportunity_queue.get_counts()["delayed"] == 1


def test_recurrence_not_claimable_before_slot(service, opportunity_queue, clock):
    """Test the pending occurrence stays Delayed until its slot"""
    service.enqueue_opportunity_detection(["reddit"])

    clock.set(SLOT_1200 - timedelta(seconds=1))
    service.scheduler.tick()

    assert opportunity_queue.dequeue_next() is None


def test_recurrence_catches_up_missed_slots(service, opportunity_queue, clock):
    """Test a scheduler that was down creates every missed occurrence exactly once"""
    service.enqueue_opportunity_detection(["reddit"])

    # Down from 10:00 until 05:00 the next day: 12:00, 18:00 and 00:00 were missed
    clock.set(slot(17))
    result = service.scheduler.tick()

    assert len(result.spawned[QueueName.OPPORTUNITY_DETECTION]) == 3
    assert len(result.promoted[QueueName.OPPORTUNITY_DETECTION]) == 3
    counts = opportunity_queue.get_counts()
    assert counts["waiting"] == 3
    assert counts["delayed"] == 1

    claimed = [opportunity_queue.dequeue_next().id for _ in range(3)]
    expected_slots = [slot(0), slot(6), slot(12)]
    assert [job_id.rsplit(":", 1)[1] for job_id in claimed] == [str(to_ms(s)) for s in expected_slots]

    pending = opportunity_queue.list_jobs(JobState.DELAYED)
    assert [job.next_run_at for job in pending] == [slot(18)]


def test_restarted_scheduler_does_not_duplicate(service, make_service, opportunity_queue, clock):
    """Test a fresh scheduler over the same broker state creates no extra jobs"""
    service.enqueue_opportunity_detection(["reddit"])
    clock.set(slot(7))
    service.scheduler.tick()
    before = opportunity_queue.get_counts()

    restarted = make_service()
    result = restarted.scheduler.tick()

    assert result.changed is False
    assert opportunity_queue.get_counts() == before


def test_concurrent_schedulers_share_recurrence(service, make_service, opportunity_queue, clock):
    """Test two schedulers ticking after an outage still create each slot once"""
    service.enqueue_opportunity_detection(["reddit"])
    other = make_service()

    clock.set(slot(13))
    first = service.scheduler.tick()
    second = other.scheduler.tick()

    spawned = (first.spawned[QueueName.OPPORTUNITY_DETECTION]
               + second.spawned[QueueName.OPPORTUNITY_DETECTION])
    assert len(spawned) == len(set(spawned)) == 3
    counts = opportunity_queue.get_counts()
    assert counts["waiting"] == 3
    assert counts["delayed"] == 1


def test_stalled_job_returns_to_waiting(service, clock, test_config):
    """Test an Active job whose lease expired is handed out again"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 2)
    queue.dequeue_next()

    clock.advance(seconds=test_config.job_timeout - 1)
    assert service.scheduler.tick().changed is False

    clock.advance(seconds=1)
    result = service.scheduler.tick()

    assert result.requeued[QueueName.BUSINESS_LAUNCH_STEP] == [job_id]
    job = queue.get_job(job_id)
    assert job.state == JobState.WAITING
    assert job.stalled_count == 1
    assert job.attempts_made == 0
    assert queue.dequeue_next().id == job_id


def test_late_report_after_stall_is_rejected(service, clock, test_config):
    """Test the first worker cannot report a job that was reclaimed"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 2)
    queue.dequeue_next()

    clock.advance(seconds=test_config.job_timeout)
    service.scheduler.tick()

    with pytest.raises(InvalidJobStateException):
        queue.report_success(job_id)
    assert queue.get_job(job_id).state == JobState.WAITING


def test_late_report_after_reclaim_by_another_worker_is_rejected(service, make_service, clock, test_config):
    """Test a worker whose lease expired cannot settle the next worker's claim"""
    first = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    second = make_service().queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 2)
    stale = first.dequeue_next()

    clock.advance(seconds=test_config.job_timeout)
    service.scheduler.tick()
    current = second.dequeue_next()
    assert current.id == job_id
    assert current.claim_count == stale.claim_count + 1

    with pytest.raises(InvalidJobStateException):
        first.report_success(job_id)
    with pytest.raises(InvalidJobStateException):
        first.report_failure(stale, "late failure")
    job = first.get_job(job_id)
    assert job.state == JobState.ACTIVE
    assert job.attempts_made == 0

    second.report_success(current, "done")

    job = first.get_job(job_id)
    assert job.state == JobState.COMPLETED
    assert job.result == "done"
    assert job.attempts_made == 1


def test_stale_job_rejected_after_reclaim_on_same_queue(service, clock, test_config):
    """Test reporting with an earlier claim of a job is rejected once it was claimed again"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 2)
    stale = queue.dequeue_next()

    clock.advance(seconds=test_config.job_timeout)
    service.scheduler.tick()
    current = queue.dequeue_next()

    with pytest.raises(InvalidJobStateException):
        queue.report_success(stale)

    queue.report_success(job_id)
    assert queue.get_job(job_id).state == JobState.COMPLETED
    assert current.claim_count == 2


def test_job_stalling_too_often_fails(service, clock, test_config):
    """Test a job that stalls more than max_stalled_count times is marked Failed"""
    queue = service.queue(QueueName.BUSINESS_LAUNCH_STEP)
    job_id = service.enqueue_business_launch_step("b1", "u1", 2)

    for _ in range(test_config.max_stalled_count + 1):
        assert queue.dequeue_next().id == job_id
        clock.advance(seconds=test_config.job_timeout)
        service.scheduler.tick()

    job = queue.get_job(job_id)
    assert job.state == JobState.FAILED
    assert job.failed_reason == STALLED_REASON
    assert queue.dequeue_next() is None


def test_scheduler_thread_start_stop(make_service):
    """Test the background scheduler starts and stops cleanly"""
    service = make_service(run_scheduler=True)
    assert service.scheduler.running is True

    service.scheduler.stop(timeout=5)
    assert service.scheduler.running is False
