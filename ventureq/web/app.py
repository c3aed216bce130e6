"""Flask application: queue monitoring and producer endpoints"""
from flask import Flask, jsonify, request
from typing import Any, Optional

from ventureq.config import Config
from ventureq.exceptions import InvalidPayload, QueueUnavailable
from ventureq.models import JobState, QueueName
from ventureq.service import SchedulingService


def create_app(config: Optional[Config] = None, service: Optional[SchedulingService] = None) -> Flask:
    """Create and configure Flask application"""
    app = Flask(__name__)
    app.json.sort_keys = False

    if service is None:
        # The web process only produces and inspects; schedulers run elsewhere
        service = SchedulingService(config or Config.load(), run_scheduler=False).open()

    def _queue_name(value: str) -> QueueName:
        try:
            return QueueName(value)
        except ValueError:
            raise InvalidPayload(f"Unknown queue '{value}'") from None

    @app.errorhandler(InvalidPayload)
    def handle_invalid_payload(e: InvalidPayload) -> Any:
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(QueueUnavailable)
    def handle_unavailable(e: QueueUnavailable) -> Any:
        return jsonify({'error': str(e)}), 503

    @app.route('/')
    def index() -> Any:
        """Overview of every queue"""
        return jsonify({
            name.value: {
                'counts': queue.get_counts(),
                'max_attempts': queue.options.max_attempts,
                'backoff_ms': queue.options.backoff.base_delay_ms,
                'recurrences': [rule.pattern for rule in queue.get_repeat_rules()],
            }
            for name, queue in service.queues.items()
        })

    @app.route('/api/stats')
    def api_stats() -> Any:
        """Get job counts by state for every queue"""
        return jsonify({name.value: queue.get_counts() for name, queue in service.queues.items()})

    @app.route('/api/jobs')
    def api_jobs() -> Any:
        """Get list of jobs with optional queue and state filters"""
        state_str = request.args.get('state')
        queue_str = request.args.get('queue')
        try:
            state = JobState(state_str) if state_str else None
        except ValueError:
            return jsonify({'error': f"Unknown state '{state_str}'"}), 400

        names = [_queue_name(queue_str)] if queue_str else list(QueueName)
        jobs = []
        for name in names:
            jobs.extend(job.to_dict() for job in service.queue(name).list_jobs(state))
        return jsonify(jobs)

    @app.route('/api/jobs/<queue_name>/<job_id>')
    def api_job(queue_name: str, job_id: str) -> Any:
        """Get a single job"""
        job = service.queue(_queue_name(queue_name)).get_job(job_id)
        if job is None:
            return jsonify({'error': f"Job '{job_id}' not found"}), 404
        return jsonify(job.to_dict())

    @app.route('/api/events/<queue_name>')
    def api_events(queue_name: str) -> Any:
        """Most recent lifecycle events, newest first"""
        count = request.args.get('count', 50, type=int)
        events = service.events.recent(_queue_name(queue_name), count)
        return jsonify([event.to_dict() for event in events])

    def _json_body() -> Any:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise InvalidPayload('Request body must be a JSON object')
        return data

    @app.route('/api/opportunity-detection', methods=['POST'])
    def api_opportunity_detection() -> Any:
        """Register the recurring opportunity detection run"""
        data = _json_body()
        job_id = service.enqueue_opportunity_detection(
            data.get('sources'),
            force_refresh=data.get('force_refresh', data.get('forceRefresh', False)),
        )
        return jsonify({'success': True, 'job_id': job_id}), 202

    @app.route('/api/business-launch-step', methods=['POST'])
    def api_business_launch_step() -> Any:
        """Enqueue one step of the launch wizard"""
        job_id = service.queue(QueueName.BUSINESS_LAUNCH_STEP).add(_json_body())
        return jsonify({'success': True, 'job_id': job_id}), 202

    @app.route('/api/metrics-aggregation', methods=['POST'])
    def api_metrics_aggregation() -> Any:
        """Enqueue a daily metrics aggregation"""
        job_id = service.queue(QueueName.METRICS_AGGREGATION).add(_json_body())
        return jsonify({'success': True, 'job_id': job_id}), 202

    app.extensions['ventureq'] = service
    return app


def run_server(host: str = '127.0.0.1', port: int = 5000, debug: bool = False) -> None:
    """Run the Flask development server"""
    app = create_app()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        app.extensions['ventureq'].shutdown()
