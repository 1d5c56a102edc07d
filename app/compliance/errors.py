"""
Domain error taxonomy.

Services raise these; the app factory turns them into JSON responses
(`{"error": kind, "message": text}`) with the matching HTTP status and rolls
back the request session so no partial mutation is ever committed.
"""
from __future__ import annotations

from typing import Any


class DomainError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(DomainError):
    """Malformed input; the caller must correct and retry."""

    status_code = 400
    kind = "validation_error"


class PermissionDenied(DomainError):
    status_code = 403
    kind = "permission_denied"


class ContentUnsafe(DomainError):
    """Version content must not be served (infected, or unverified under a blocking policy)."""

    status_code = 403
    kind = "content_unsafe"


class NotFound(DomainError):
    status_code = 404
    kind = "not_found"


class ConflictError(DomainError):
    """State-machine violation: terminal step, second active workflow, system template edit."""

    status_code = 409
    kind = "conflict"


class ContentTooLarge(DomainError):
    status_code = 413
    kind = "content_too_large"


class AllocationRace(DomainError):
    """
    Lost a race on an inventory counter. Retried internally; only surfaces when
    every retry failed, which points at a concurrency-control problem.
    """

    status_code = 503
    kind = "allocation_race"


class PdfUnavailable(DomainError):
    status_code = 503
    kind = "pdf_unavailable"
