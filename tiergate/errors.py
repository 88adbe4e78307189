"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all failures raised by the core
- ValidationError: malformed webhook payload or request (not retried)
- AuthError: bad webhook signature or admin secret (not retried)
- UpstreamSyncError: billing provider query failed (callers fall back to local state)
- PersistenceError: ledger or registry store unreachable (fatal for the request)

Quota denials are not errors; they are returned as Decision objects.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ValidationError(EntitlementError):
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.field is not None:
            d["field"] = self.field
        return d


class AuthError(EntitlementError):
    """
    Raised when a caller fails authentication.

    status_code is 401 for webhook signatures and 403 for the admin secret.
    """

    error_code = "AUTH_ERROR"

    def __init__(self, message: str, status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)


class UpstreamSyncError(EntitlementError):
    error_code = "UPSTREAM_SYNC_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(EntitlementError):
    """Raised when a store operation fails. Never interpreted as an allow."""

    error_code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
