"""
Error taxonomy shared by every termtrans component.

Each error carries a stable ``reason`` string that callers (CLI, tests,
API layers) can match on without parsing the message, plus an optional
``extra`` dict with diagnostic context (sheet name, counts, provider status).

    ValidationError      caller supplied malformed/missing parameters
    NotFoundError        unknown category, unknown or expired batch
    DataIntegrityError   sheet is structurally unusable (no anchor column)
    ExternalServiceError translator or data store failed / timed out
"""

from __future__ import annotations

from typing import Any, Optional


class TermTransError(Exception):
    """Base class for all termtrans errors."""

    default_reason = "error"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.extra = dict(extra or {})

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output / logging."""
        payload: dict[str, Any] = {
            "ok": False,
            "error": self.message,
            "reason": self.reason,
        }
        if self.extra:
            payload["extra"] = self.extra
        return payload


class ValidationError(TermTransError):
    default_reason = "invalid_request"


class NotFoundError(TermTransError):
    default_reason = "not_found"


class DataIntegrityError(TermTransError):
    default_reason = "data_integrity"


class ExternalServiceError(TermTransError):
    """A collaborator call failed.

    ``status`` holds the provider status code when one is known
    (HTTP status from the translator, ``None`` for timeouts).
    """

    default_reason = "external_service"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, reason=reason, extra=extra)
        self.status = status
        if status is not None:
            self.extra.setdefault("provider_status", status)
