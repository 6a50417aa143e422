"""
Ledger error taxonomy.

Every error a core operation raises on purpose derives from LedgerError and
carries the HTTP status the API surfaces it with. ValidationError,
ConflictError, NotFoundError and AuthorizationError reach the caller;
StorageError is surfaced only by the proof gateway; ExternalServiceError is
raised inside notification delivery and never leaves it.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base exception for all offer-ledger errors."""

    status_code = 500
    code = "ledger_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationError(LedgerError):
    """400-level input problem."""

    status_code = 400
    code = "validation_error"


class AuthorizationError(LedgerError):
    """403-level: principal may not perform this operation."""

    status_code = 403
    code = "forbidden"


class NotFoundError(LedgerError):
    """404-level: referenced Offer/Payment/Invoice does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(LedgerError):
    """
    409-level: compare-and-swap precondition failed.

    current_status is the status the record had moved on to, so callers can
    re-fetch and report "already handled" instead of a generic failure.
    """

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, *, current_status: str | None = None, **details: Any):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class StorageError(LedgerError):
    """Proof artifact retrieval failure; never affects ledger state."""

    status_code = 502
    code = "storage_error"


class ExternalServiceError(LedgerError):
    """Notification dispatch failure; logged and swallowed."""

    status_code = 502
    code = "external_service_error"
