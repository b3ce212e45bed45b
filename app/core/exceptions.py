"""HTTP-facing error types.

Every error carries a machine-readable `code` so clients can tell
"slow down" (RATE_LIMITED) from "out of monthly answers"
(USER_QUOTA_EXCEEDED) from "the models are down" (SERVICE_DEGRADED).
"""

from typing import Any

from fastapi import HTTPException


class AppError(HTTPException):
    status_code_default: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        detail: str = "",
        *,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        super().__init__(status_code=self.status_code_default, detail=detail, headers=headers)
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code, **self.extra}


class BadRequestError(AppError):
    status_code_default = 400
    code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    status_code_default = 401
    code = "UNAUTHORIZED"


class QuotaExceededError(AppError):
    """Caller has used up the monthly AI requests of their plan."""

    status_code_default = 402
    code = "USER_QUOTA_EXCEEDED"


class ExtractionFailedError(AppError):
    status_code_default = 422
    code = "EXTRACTION_ERROR"


class RateLimitedError(AppError):
    """Ingress rejection: too many requests from one origin."""

    status_code_default = 429
    code = "RATE_LIMITED"


class ServiceDegradedError(AppError):
    """Every configured provider failed for this request."""

    status_code_default = 503
    code = "SERVICE_DEGRADED"
