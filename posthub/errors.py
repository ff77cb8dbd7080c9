"""
Error taxonomy for the post service.

Only ``ValidationError``, ``NotFoundError`` and ``ForbiddenError`` ever
reach an API caller.  ``QueueDeliveryFailure`` and ``CacheUnavailable``
describe conditions that are logged and contained inside the queue and
cache subsystems; they are never raised on the write path.
"""


class PosthubError(Exception):
    """Base exception; carries the HTTP status the API layer maps it to."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(PosthubError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(PosthubError):
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(PosthubError):
    code = "FORBIDDEN"
    http_status = 403


class ConflictError(PosthubError):
    code = "CONFLICT"
    http_status = 409


class QueueDeliveryFailure(PosthubError):
    """A job handler raised or timed out."""

    code = "QUEUE_DELIVERY_FAILURE"

    def __init__(self, job_id: int, job_type: str, attempt: int, cause: BaseException) -> None:
        detail = str(cause) or type(cause).__name__
        super().__init__(f"job {job_id} ({job_type}) attempt {attempt} failed: {detail}")
        self.job_id = job_id
        self.job_type = job_type
        self.attempt = attempt


class CacheUnavailable(PosthubError):
    code = "CACHE_UNAVAILABLE"
    http_status = 503
