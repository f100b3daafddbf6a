"""Error taxonomy for the orchestration core.

Each error carries the HTTP status it maps to and a stable machine-readable
code. Routes raise these; the handlers registered in ``app.main`` render
them into the ``{success: false, error}`` envelope.
"""


class OrchestrationError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(OrchestrationError):
    """Malformed request or payload. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AccessDeniedError(OrchestrationError):
    """Caller may not touch the requested resource."""

    status_code = 403
    code = "ACCESS_DENIED"


class NotFoundError(OrchestrationError):
    """Missing worker, task or schedule."""

    status_code = 404
    code = "NOT_FOUND"


class ExecutionFailure(OrchestrationError):
    """Business failure inside a workflow run.

    Captured into task state by the queue consumer; never surfaced as an
    HTTP error from the queue drain.
    """

    status_code = 422
    code = "EXECUTION_FAILED"


class StorageError(OrchestrationError):
    """Failure persisting a primary record (snapshot, execution or block log)."""

    status_code = 500
    code = "STORAGE_ERROR"


class UnauthorizedError(OrchestrationError):
    """No caller identity on the request."""

    status_code = 401
    code = "UNAUTHORIZED"
