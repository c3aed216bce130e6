"""ventureq - background job scheduling for the venture builder"""

from ventureq.config import Config
from ventureq.exceptions import (
    VentureQException,
    InvalidPayload,
    QueueUnavailable,
    HandlerExecutionError,
    JobNotFoundException,
    InvalidJobStateException,
    ConfigurationException,
)
from ventureq.models import Job, JobState, QueueName, Source
from ventureq.service import SchedulingService

__version__ = "1.0.0"

__all__ = [
    'Config', 'SchedulingService', 'Job', 'JobState', 'QueueName', 'Source',
    'VentureQException', 'InvalidPayload', 'QueueUnavailable', 'HandlerExecutionError',
    'JobNotFoundException', 'InvalidJobStateException', 'ConfigurationException',
]
