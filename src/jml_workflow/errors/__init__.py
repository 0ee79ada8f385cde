"""Engine exceptions and user-friendly error translation."""

from .exceptions import (
    ConfigurationError,
    ExecutionError,
    GraphError,
    InvalidStateError,
    NotFoundError,
    TransientDeliveryError,
    WorkflowError,
)
from .translator import ErrorTranslator, UserFriendlyError

__all__ = [
    "ConfigurationError",
    "ExecutionError",
    "GraphError",
    "InvalidStateError",
    "NotFoundError",
    "TransientDeliveryError",
    "WorkflowError",
    "ErrorTranslator",
    "UserFriendlyError",
]
