"""
Application error taxonomy.

Every error raised by the hierarchy and authorization core derives from
AppError. The web layer renders them through one exception handler
(see app.main), so route handlers never translate errors by hand.

`applied` tells the caller whether anything was written before the failure:
False means the request was rejected as a whole and can be retried as-is,
True means some state changed and the operation needs reconciliation
(resume the cascade job) rather than a blind retry.
"""
from typing import Any, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"
    applied: bool = False

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.detail, "applied": self.applied, **self.extra}


class Unauthenticated(AppError):
    """No actor could be resolved from the request."""

    status_code = 401
    code = "unauthenticated"


class Unauthorized(AppError):
    """The actor was resolved but the decision was Deny."""

    status_code = 403
    code = "unauthorized"


class InvalidHierarchy(AppError):
    """Cycle, wrong parent type, malformed path or non-empty subtree."""

    status_code = 400
    code = "invalid_hierarchy"


class InvalidPermission(AppError):
    """A permission string does not follow the permission grammar."""

    status_code = 400
    code = "invalid_permission"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class QuotaExceeded(AppError):
    status_code = 409
    code = "quota_exceeded"


class CascadeBusy(AppError):
    """Another structural mutation holds the subtree lease."""

    status_code = 409
    code = "cascade_busy"


class PartialCascadeFailure(AppError):
    """
    Some descendants were rewritten and others were not.

    The cascade job stays in the journal as failed; resuming it drives the
    rewrite to completion.
    """

    status_code = 503
    code = "partial_cascade_failure"
    applied = True

    def __init__(self, detail: str, job_id: str, rewritten: int = 0, cause: Optional[BaseException] = None):
        super().__init__(detail, job_id=job_id, rewritten=rewritten)
        self.job_id = job_id
        self.rewritten = rewritten
        self.cause = cause
