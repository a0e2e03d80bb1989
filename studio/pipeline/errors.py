"""
Error kinds raised by the project lifecycle.

Each carries a user-safe ``message`` and the HTTP status the routes
answer with. Raw provider or database text never goes into ``message``.
"""


class ProjectError(Exception):
    kind = "project_error"
    status_code = 500

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        # Raw cause, kept for logs and the project record
        self.detail = detail


class Unauthorized(ProjectError):
    kind = "unauthorized"
    status_code = 401


class InvalidRequest(ProjectError):
    kind = "invalid_request"
    status_code = 400


class InsufficientCredits(ProjectError):
    kind = "insufficient_credits"
    status_code = 400


class ProjectNotFound(ProjectError):
    kind = "not_found"
    status_code = 404


class InvalidState(ProjectError):
    kind = "invalid_state"
    status_code = 400


class GenerationFailed(ProjectError):
    kind = "generation_failed"
    status_code = 500


class InfrastructureFailure(ProjectError):
    kind = "infrastructure_failure"
    status_code = 500


class GenerationTimedOut(ProjectError):
    kind = "timed_out"
    status_code = 504
