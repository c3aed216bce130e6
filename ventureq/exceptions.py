"""Custom exceptions for ventureq"""


class VentureQException(Exception):
    """Base exception for all ventureq errors"""
    pass


class InvalidPayload(VentureQException):
    """Raised when a payload does not match its queue's expected shape"""
    pass


class QueueUnavailable(VentureQException):
    """Raised when the broker connection is down"""
    pass


class HandlerExecutionError(VentureQException):
    """Raised by a job handler; converted into a failed attempt by the executor"""
    pass


class JobNotFoundException(VentureQException):
    """Raised when a job is not found"""
    pass


class InvalidJobStateException(VentureQException):
    """Raised when attempting invalid state transition"""
    pass


class ConfigurationException(VentureQException):
    """Raised when configuration is invalid"""
    pass
