"""Exception taxonomy for the workflow engine."""

from typing import List, Optional

# Stable error codes surfaced on failed steps and instances
BRANCH_NO_MATCH = "BRANCH_NO_MATCH"
STEP_NOT_FOUND = "STEP_NOT_FOUND"
NO_HANDLER = "NO_HANDLER"
HANDLER_ERROR = "HANDLER_ERROR"
WAIT_TIMEOUT = "WAIT_TIMEOUT"
PARALLEL_BRANCH_FAILED = "PARALLEL_BRANCH_FAILED"


class WorkflowError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(WorkflowError):
    """A workflow definition or config file is malformed.

    Carries the individual issues so callers can render them.
    """

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class GraphError(ConfigurationError):
    """The step graph contains a cycle."""


class ExecutionError(WorkflowError):
    """A step handler failed. Governed by the step's error policy."""

    def __init__(self, message: str, step_id: Optional[str] = None, code: str = HANDLER_ERROR):
        super().__init__(message)
        self.step_id = step_id
        self.code = code


class TransientDeliveryError(WorkflowError):
    """A delivery or resume attempt failed in a way worth retrying."""


class InvalidStateError(WorkflowError):
    """An operation is not allowed in the current status."""


class NotFoundError(WorkflowError):
    """A referenced record does not exist."""
