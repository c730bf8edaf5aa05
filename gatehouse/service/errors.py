from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:

    - malformed_credential / expired_credential / revoked_credential /
      stale_credential / account_inactive (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - rate_limited (429)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential rejected (401).

    ``refreshable`` tells the client whether presenting its refresh token
    can recover; only plain expiry qualifies.
    """
    status_code = 401
    error_code = "unauthorized"
    refreshable = False


class MalformedCredentialError(AuthenticationError):
    """Token missing, unparseable, wrongly signed or of the wrong type."""
    error_code = "malformed_credential"


class ExpiredCredentialError(AuthenticationError):
    error_code = "expired_credential"
    refreshable = True


class RevokedCredentialError(AuthenticationError):
    """Refresh token no longer current, or its subject no longer exists."""
    error_code = "revoked_credential"


class StaleCredentialError(AuthenticationError):
    """Issued before the subject's most recent password change."""
    error_code = "stale_credential"


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    @property
    def retry_after(self) -> float:
        return float(self.detail.get("retry_after", 0))


class ServiceUnavailableError(ServiceError):
    """A dependency needed to make the decision is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MalformedCredentialError",
    "ExpiredCredentialError",
    "RevokedCredentialError",
    "StaleCredentialError",
    "AccountInactiveError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
