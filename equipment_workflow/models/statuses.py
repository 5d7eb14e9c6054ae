from enum import Enum


class StatusKind(str, Enum):
    ITEM = "item"
    REQUEST = "request"
    RENTAL = "rental"
    CALIBRATION = "calibration"
    MAINTENANCE = "maintenance"


class ItemStatus(str, Enum):
    AVAILABLE = "available"
    REQUESTED = "requested"
    ON_LOAN = "on_loan"
    IN_CALIBRATION = "in_calibration"
    IN_MAINTENANCE = "in_maintenance"
    RETIRED = "retired"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"


class RentalStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class CalibrationStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class MaintenanceStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RequestType(str, Enum):
    BORROW = "borrow"
    CALIBRATION = "calibration"


class DecisionOutcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class CalibrationResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class ActivityType(str, Enum):
    ITEM_CREATED = "item_created"
    ITEM_RETIRED = "item_retired"
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    ITEM_RETURNED = "item_returned"
    RENTAL_OVERDUE = "rental_overdue"
    CALIBRATION_COMPLETED = "calibration_completed"
    MAINTENANCE_STARTED = "maintenance_started"
    MAINTENANCE_COMPLETED = "maintenance_completed"


# Plain string sets: Enum hashes by member name, so a raw column value
# would never be found in a set of members.
OPEN_REQUEST_STATES = frozenset({RequestStatus.PENDING.value, RequestStatus.APPROVED.value})
DECIDED_REQUEST_STATES = frozenset(
    {RequestStatus.APPROVED.value, RequestStatus.REJECTED.value, RequestStatus.CLOSED.value}
)
RETURNABLE_RENTAL_STATES = frozenset({RentalStatus.ACTIVE.value, RentalStatus.OVERDUE.value})
