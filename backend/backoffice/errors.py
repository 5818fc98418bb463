# Overview: Domain error taxonomy shared by services, routes and CLI.

from __future__ import annotations


class BackofficeError(Exception):
    """Base class: every domain failure carries a kind, a message and details."""

    kind = "error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "details": self.details}


class ValidationError(BackofficeError, ValueError):
    """400-level input problem (field-level details)."""

    kind = "validation_error"
    http_status = 400


class UnbalancedJournal(ValidationError):
    kind = "unbalanced_journal"


class PreconditionFailed(BackofficeError):
    """Valid request, but the current state does not permit it."""

    kind = "precondition_failed"
    http_status = 409


class InvalidTransition(PreconditionFailed):
    kind = "invalid_transition"

    def __init__(self, current: str, requested: str, message: str | None = None):
        super().__init__(
            message or f"Cannot transition order from {current} to {requested}",
            {"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class Forbidden(BackofficeError):
    kind = "forbidden"
    http_status = 403


class ConcurrencyConflict(BackofficeError):
    """Lock contention or stale row that survived the bounded retry."""

    kind = "concurrency_conflict"
    http_status = 409


class ResourceNotFound(BackofficeError):
    kind = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id, message: str | None = None):
        super().__init__(
            message or f"{resource} {resource_id} not found",
            {"resource": resource, "id": resource_id},
        )


class IntegrityViolation(BackofficeError):
    """An invariant would break (negative stock, over-allocation)."""

    kind = "integrity_violation"
    http_status = 422
