"""Error taxonomy shared by the sync engine, the query engine and the API.

Every error carries a machine-classifiable ``kind`` and the HTTP status the
API answers with; ``to_dict()`` is the structured body returned to callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class IssueSyncError(Exception):
    """Base class for engine errors"""

    kind = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        body = {"kind": self.kind, "message": self.message, "retryable": self.retryable}
        body.update(self.extra())
        return body


class AuthenticationFailure(IssueSyncError):
    """Credential rejected by the tracker (HTTP 401)."""

    kind = "authentication_failure"
    http_status = 401

    def __init__(self, message: str, *, token_expiration: Optional[str] = None):
        super().__init__(message)
        self.token_expiration = token_expiration

    def extra(self) -> dict[str, Any]:
        return {"token_expiration": self.token_expiration}


class RateLimitExceeded(IssueSyncError):
    """Rate limit exhausted; retry no earlier than ``reset_at``."""

    kind = "rate_limit_exceeded"
    http_status = 429
    retryable = True

    def __init__(self, message: str, *, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at

    def extra(self) -> dict[str, Any]:
        return {"reset_at": self.reset_at.isoformat() + "Z" if self.reset_at else None}


class PermissionDenied(IssueSyncError):
    """Credential valid but lacking the scopes for the target (HTTP 403)."""

    kind = "permission_denied"
    http_status = 403


class TransientNetworkFailure(IssueSyncError):
    """Timeout, connection error or upstream 5xx; safe to retry with backoff."""

    kind = "transient_network_failure"
    http_status = 503
    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def extra(self) -> dict[str, Any]:
        return {"upstream_status": self.status}


class ValidationFailure(IssueSyncError):
    """Malformed filter or sync input, rejected before any store access."""

    kind = "validation_failure"
    http_status = 422

    def __init__(self, message: str, *, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

    def extra(self) -> dict[str, Any]:
        return {"errors": self.errors}


class SyncInProgress(IssueSyncError):
    """A run for the same target is already active."""

    kind = "sync_in_progress"
    http_status = 409
    retryable = True


class SyncCancelled(IssueSyncError):
    """The run was cancelled at a page boundary."""

    kind = "sync_cancelled"
    http_status = 409


class ConfigurationError(IssueSyncError):
    """Missing target or credentials."""

    kind = "configuration_error"
    http_status = 500
