"""
Error taxonomy for the auto-engagement flow engine.

Structural errors (validation, conflict, not found) are raised before any
state change. Action errors are recorded in the action log and never reach
the caller that started an execution.
"""


class FlowEngineError(Exception):
    """Base class for every error raised by the flow engine."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FlowEngineError):
    """Malformed input caught before any mutation."""

    status_code = 400


class ConflictError(FlowEngineError):
    """A priority is already held by another flow of the same owner."""

    status_code = 409


class NotFoundError(FlowEngineError):
    """Entity absent or owned by someone else. Never distinguishes the two."""

    status_code = 404


class ExecutionError(FlowEngineError):
    """An action executor failed, or the dispatch ceiling was exceeded."""

    def __init__(self, message: str, detail: dict = None):
        super().__init__(message)
        self.detail = detail or {}


class FatalActionError(ExecutionError):
    """An executor failure that must stop the rest of the sequence."""
