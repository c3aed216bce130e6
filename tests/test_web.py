"""Tests for the Flask dashboard and producer API"""

import pytest

from ventureq.models import JobState, QueueName
from ventureq.web.app import create_app


@pytest.fixture
def client(service):
    app = create_app(service=service)
    app.testing = True
    return app.test_client()


def test_enqueue_launch_step(client, service):
    """Test POSTing a launch step enqueues it"""
    resp = client.post('/api/business-launch-step', json={"businessId": "b1", "userId": "u1", "step": 2})

    assert resp.status_code == 202
    job_id = resp.get_json()["job_id"]
    job = service.queue(QueueName.BUSINESS_LAUNCH_STEP).get_job(job_id)
    assert job.state == JobState.WAITING
    assert job.payload.step == 2


def test_enqueue_metrics(client, service):
    """Test POSTing a metrics aggregation enqueues it"""
    resp = client.post('/api/metrics-aggregation', json={"business_id": "b1", "date": "2024-04-30"})

    assert resp.status_code == 202
    assert service.queue(QueueName.METRICS_AGGREGATION).get_counts()["waiting"] == 1


def test_register_opportunity_detection(client, service):
    """Test POSTing opportunity detection registers the recurrence once"""
    body = {"sources": ["reddit", "google_trends"], "forceRefresh": True}
    first = client.post('/api/opportunity-detection', json=body).get_json()["job_id"]
    second = client.post('/api/opportunity-detection', json=body).get_json()["job_id"]

    assert first == second
    job = service.queue(QueueName.OPPORTUNITY_DETECTION).get_job(first)
    assert job.state == JobState.DELAYED
    assert job.payload.force_refresh is True


@pytest.mark.parametrize("path,body", [
    ('/api/business-launch-step', {"business_id": "b1", "user_id": "u1", "step": 12}),
    ('/api/metrics-aggregation', {"business_id": "b1", "date": "April 30"}),
    ('/api/opportunity-detection', {"sources": []}),
    ('/api/business-launch-step', ["not", "an", "object"]),
])
def test_invalid_payload_rejected(client, path, body):
    """Test invalid bodies get 400 with an error message"""
    resp = client.post(path, json=body)

    assert resp.status_code == 400
    assert resp.get_json()["error"]


@pytest.mark.parametrize("sources", ["reddit", None])
def test_opportunity_sources_must_be_a_list(client, service, sources):
    """Test a bare string of sources is rejected, not split into characters"""
    resp = client.post('/api/opportunity-detection', json={"sources": sources})

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "'sources' must be a list of source names"
    assert service.queue(QueueName.OPPORTUNITY_DETECTION).get_repeat_rules() == []


def test_stats(client, service):
    """Test per-queue counts"""
    service.enqueue_business_launch_step("b1", "u1", 1)

    data = client.get('/api/stats').get_json()

    assert set(data) == {q.value for q in QueueName}
    assert data["business-launch-step"]["waiting"] == 1
    assert data["metrics-aggregation"]["waiting"] == 0


def test_index_overview(client, service):
    """Test the overview lists queue options and recurrences"""
    service.enqueue_opportunity_detection(["reddit"])

    data = client.get('/').get_json()

    assert data["metrics-aggregation"]["max_attempts"] == 5
    assert data["metrics-aggregation"]["backoff_ms"] == 2000
    assert data["opportunity-detection"]["recurrences"] == ["0 */6 * * *"]


def test_list_jobs(client, service):
    """Test listing jobs with queue and state filters"""
    launch = service.enqueue_business_launch_step("b1", "u1", 1)
    service.enqueue_metrics_aggregation("b1", "2024-04-30")

    jobs = client.get('/api/jobs?queue=business-launch-step&state=waiting').get_json()

    assert [j["id"] for j in jobs] == [launch]
    assert jobs[0]["payload"] == {"business_id": "b1", "user_id": "u1", "step": 1}
    assert len(client.get('/api/jobs').get_json()) == 2


def test_list_jobs_bad_filters(client):
    """Test unknown state or queue filters get 400"""
    assert client.get('/api/jobs?state=running').status_code == 400
    assert client.get('/api/jobs?queue=emails').status_code == 400


def test_get_job(client, service):
    """Test fetching a single job"""
    job_id = service.enqueue_metrics_aggregation("b1", "2024-04-30")

    resp = client.get(f'/api/jobs/metrics-aggregation/{job_id}')

    assert resp.status_code == 200
    assert resp.get_json()["name"] == "aggregate-metrics"
    assert client.get('/api/jobs/metrics-aggregation/999').status_code == 404


def test_events(client, service):
    """Test recent events newest first"""
    job_id = service.enqueue_business_launch_step("b1", "u1", 1)
    service.queue(QueueName.BUSINESS_LAUNCH_STEP).dequeue_next()

    events = client.get('/api/events/business-launch-step?count=5').get_json()

    assert [e["event"] for e in events] == ["active", "enqueued"]
    assert all(e["job_id"] == job_id for e in events)


def test_broker_down_returns_503(client, redis_server):
    """Test producer calls fail with 503 while the broker is unreachable"""
    redis_server.connected = False

    resp = client.post('/api/metrics-aggregation', json={"business_id": "b1", "date": "2024-04-30"})

    assert resp.status_code == 503
