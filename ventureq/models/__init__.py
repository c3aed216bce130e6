from .payloads import (
    Source,
    OpportunityDetectionPayload,
    BusinessLaunchStepPayload,
    MetricsAggregationPayload,
    Payload,
    sources_from,
)
from .job import (
    Job,
    JobState,
    QueueName,
    BackoffPolicy,
    RetentionPolicy,
    QueueOptions,
    QUEUE_DEFAULTS,
    OPPORTUNITY_RECURRENCE,
    coerce_payload,
)

__all__ = [
    'Source', 'OpportunityDetectionPayload', 'BusinessLaunchStepPayload',
    'MetricsAggregationPayload', 'Payload', 'sources_from',
    'Job', 'JobState', 'QueueName', 'BackoffPolicy', 'RetentionPolicy',
    'QueueOptions', 'QUEUE_DEFAULTS', 'OPPORTUNITY_RECURRENCE', 'coerce_payload',
]
