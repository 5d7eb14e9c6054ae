"""Typed workflow errors.

Every error carries a stable ``code`` for API clients and a ``kind`` that tells
the caller how to react:

    validation      rejected before any state changed; fix the input
    not_found       the referenced row does not exist
    state_conflict  stale state or a repeated call; re-fetch before retrying
    concurrency     transient; safe to retry with backoff
    fatal           storage or integrity failure; nothing was committed
"""

from __future__ import annotations

from typing import Any


class WorkflowError(RuntimeError):
    code = "WORKFLOW_ERROR"
    kind = "fatal"
    http_status = 500
    retryable = False
    default_reason = "Workflow operation failed."

    def __init__(self, reason: str | None = None, **context: Any):
        self.reason = reason or self.default_reason
        self.context = context
        super().__init__(self.reason)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "reason": self.reason}
        payload.update(self.context)
        return payload


class WorkflowIntegrityError(WorkflowError):
    code = "WORKFLOW_INTEGRITY"
    default_reason = "Stored workflow rows violate a structural invariant."


# Validation


class ValidationFailure(WorkflowError):
    code = "VALIDATION_FAILED"
    kind = "validation"
    http_status = 400


class ItemUnavailable(ValidationFailure):
    code = "ITEM_UNAVAILABLE"
    http_status = 409
    default_reason = "item_unavailable"


class UnknownStatus(ValidationFailure):
    code = "UNKNOWN_STATUS"
    default_reason = "Unknown status."


class ActorRequired(ValidationFailure):
    code = "ACTOR_REQUIRED"
    default_reason = "An acting user id is required."


class ApproverRequired(ActorRequired):
    code = "APPROVER_REQUIRED"
    default_reason = "An approver id is required to decide a request."


class InvalidRequestType(ValidationFailure):
    code = "INVALID_REQUEST_TYPE"
    default_reason = "requestType must be borrow or calibration."


class InvalidDecision(ValidationFailure):
    code = "INVALID_DECISION"
    default_reason = "decision must be approve or reject."


class InvalidCalibrationResult(ValidationFailure):
    code = "INVALID_CALIBRATION_RESULT"
    default_reason = "result must be pass or fail."


class InvalidDateRange(ValidationFailure):
    code = "INVALID_DATE_RANGE"
    default_reason = "endDate must be on or after startDate."


class DocumentNotFound(ValidationFailure):
    code = "DOCUMENT_NOT_FOUND"
    default_reason = "Referenced document does not exist."


# Missing rows


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"
    kind = "not_found"
    http_status = 404


class ItemNotFound(NotFoundError):
    code = "ITEM_NOT_FOUND"
    default_reason = "Item not found"


class RequestNotFound(NotFoundError):
    code = "REQUEST_NOT_FOUND"
    default_reason = "Request not found"


class RentalNotFound(NotFoundError):
    code = "RENTAL_NOT_FOUND"
    default_reason = "Rental not found"


class CalibrationNotFound(NotFoundError):
    code = "CALIBRATION_NOT_FOUND"
    default_reason = "Calibration not found"


class MaintenanceNotFound(NotFoundError):
    code = "MAINTENANCE_NOT_FOUND"
    default_reason = "Maintenance not found"


# State conflicts


class StateConflict(WorkflowError):
    code = "STATE_CONFLICT"
    kind = "state_conflict"
    http_status = 409


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"
    default_reason = "Invalid state transition."


class AlreadyDecided(InvalidTransition):
    code = "ALREADY_DECIDED"
    default_reason = "Request has already been decided."


# Concurrency


class ConcurrencyFailure(WorkflowError):
    code = "CONCURRENCY_FAILURE"
    kind = "concurrency"
    http_status = 503
    retryable = True


class LockTimeout(ConcurrencyFailure):
    code = "LOCK_TIMEOUT"
    default_reason = "Timed out waiting for a workflow lock."
