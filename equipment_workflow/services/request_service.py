from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import (
    DECIDED_REQUEST_STATES,
    ActivityType,
    DecisionOutcome,
    ItemStatus,
    RequestStatus,
    RequestType,
)
from models.workflow_models import Calibration, ItemRequest, Rental
from services.availability_service import eligibility_for
from services.calibration_service import create_calibration, serialize_calibration
from services.errors import (
    ActorRequired,
    AlreadyDecided,
    ApproverRequired,
    InvalidDateRange,
    InvalidDecision,
    InvalidRequestType,
    InvalidTransition,
    ItemUnavailable,
    WorkflowIntegrityError,
)
from services.history_service import record_history
from services.lifecycle import (
    as_datetime,
    atomic,
    end_read,
    item_id_for_request,
    load_item,
    load_request,
    resolve_now,
    set_item_status,
)
from services.lock_service import COORDINATOR, LockCoordinator
from services.notification_service import Notifier, deliver
from services.rental_service import create_rental, serialize_rental
from services.status_catalog import CATALOG
from workflow_settings import WorkflowSettings, get_settings

REQUEST_LOGGER = logging.getLogger("equipment_workflow.requests")


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Rejected:
    reason: str | None = None


@dataclass(frozen=True)
class BorrowOutcome:
    rental: Rental


@dataclass(frozen=True)
class CalibrationOutcome:
    calibration: Calibration


@dataclass(frozen=True)
class Approved:
    fulfillment: Union[BorrowOutcome, CalibrationOutcome]
    closed: bool = False


RequestOutcome = Union[Pending, Rejected, Approved]


def resolve_outcome(request: ItemRequest) -> RequestOutcome:
    """View a stored request as exactly one of pending, rejected or approved-with-one-fulfilment."""
    status = request.Status
    rental = request.Rental
    calibration = request.Calibration
    if status == RequestStatus.PENDING.value:
        if rental is not None or calibration is not None:
            raise WorkflowIntegrityError("Pending request already owns a fulfilment record.", request_id=request.RequestID)
        return Pending()
    if status == RequestStatus.REJECTED.value:
        if rental is not None or calibration is not None:
            raise WorkflowIntegrityError("Rejected request owns a fulfilment record.", request_id=request.RequestID)
        return Rejected(request.DecisionReason)
    if (rental is None) == (calibration is None):
        raise WorkflowIntegrityError(
            "Approved request must own exactly one rental or calibration.",
            request_id=request.RequestID,
        )
    closed = status == RequestStatus.CLOSED.value
    if rental is not None:
        if request.RequestType != RequestType.BORROW.value:
            raise WorkflowIntegrityError("Rental attached to a non-borrow request.", request_id=request.RequestID)
        return Approved(BorrowOutcome(rental), closed)
    if request.RequestType != RequestType.CALIBRATION.value:
        raise WorkflowIntegrityError("Calibration attached to a non-calibration request.", request_id=request.RequestID)
    return Approved(CalibrationOutcome(calibration), closed)


def parse_request_type(request_type: RequestType | str) -> RequestType:
    try:
        return RequestType((getattr(request_type, "value", request_type) or "").strip().lower())
    except ValueError as exc:
        raise InvalidRequestType(requestType=str(request_type)) from exc


def parse_decision(outcome: DecisionOutcome | str) -> DecisionOutcome:
    try:
        return DecisionOutcome((getattr(outcome, "value", outcome) or "").strip().lower())
    except ValueError as exc:
        raise InvalidDecision(decision=str(outcome)) from exc


def submit_request(
    db: Session,
    *,
    user_id: str,
    item_id: int,
    request_type: RequestType | str,
    reason: str | None = None,
    start_date: date | datetime | None = None,
    end_date: date | datetime | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
) -> ItemRequest:
    if not (user_id or "").strip():
        raise ActorRequired("userId is required to submit a request.", item_id=item_id)
    kind = parse_request_type(request_type)
    requested_start = as_datetime(start_date)
    requested_end = as_datetime(end_date)
    if kind == RequestType.CALIBRATION and requested_end is not None:
        raise InvalidDateRange("endDate applies to borrow requests only.", item_id=item_id)
    if requested_start and requested_end and requested_end < requested_start:
        raise InvalidDateRange(item_id=item_id)

    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    end_read(db)
    with coordinator.hold(item_id, timeout=timeout):
        with atomic(db):
            item = load_item(db, item_id, for_update=True)
            eligibility = eligibility_for(db, item)
            if not eligibility.ok:
                REQUEST_LOGGER.warning(
                    "Request refused item_id=%s user_id=%s reason=%s item_status=%s",
                    item_id,
                    user_id,
                    eligibility.reason,
                    item.Status,
                )
                raise ItemUnavailable(eligibility.reason, item_id=item_id)

            request = ItemRequest(
                UserID=user_id,
                ItemID=item_id,
                RequestType=kind.value,
                Reason=reason,
                RequestDate=now,
                RequestedStartDate=requested_start,
                RequestedEndDate=requested_end,
                Status=RequestStatus.PENDING.value,
                CreatedDate=now,
                UpdatedDate=now,
            )
            db.add(request)
            db.flush()
            set_item_status(item, ItemStatus.REQUESTED, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.REQUEST_SUBMITTED,
                performed_by=user_id,
                occurred_at=now,
                related_request_id=request.RequestID,
                description=f"{kind.value.capitalize()} request submitted" + (f": {reason}" if reason else ""),
            )

    REQUEST_LOGGER.info(
        "Request submitted request_id=%s item_id=%s user_id=%s type=%s",
        request.RequestID,
        item_id,
        user_id,
        kind.value,
    )
    return request


def decide_request(
    db: Session,
    *,
    request_id: int,
    approver_id: str | None,
    outcome: DecisionOutcome | str,
    reason: str | None = None,
    start_date: date | datetime | None = None,
    end_date: date | datetime | None = None,
    calibration_date: date | datetime | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> ItemRequest:
    """Approve or reject a pending request.

    Approval spawns exactly one rental (borrow) or calibration (calibration)
    and moves the item to on_loan or in_calibration; rejection frees the item.
    A request that was already decided fails with AlreadyDecided, so a blind
    retry after a lost response surfaces as an error rather than a silent no-op.
    """
    if not (approver_id or "").strip():
        raise ApproverRequired(request_id=request_id)
    decision = parse_decision(outcome)
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    item_id = item_id_for_request(db, request_id)
    with coordinator.hold(item_id, request_id, timeout=timeout):
        with atomic(db):
            request = load_request(db, request_id, for_update=True)
            item = load_item(db, item_id, for_update=True)
            if request.Status in DECIDED_REQUEST_STATES:
                raise AlreadyDecided(
                    f"Request {request_id} is already {request.Status}.",
                    request_id=request_id,
                    status=request.Status,
                )
            if request.Status != RequestStatus.PENDING.value:
                raise InvalidTransition(
                    f"Request {request_id} is {request.Status}; only pending requests can be decided.",
                    request_id=request_id,
                    status=request.Status,
                )

            request.DecisionDate = now
            request.DecisionReason = reason
            request.UpdatedDate = now
            if decision == DecisionOutcome.REJECT:
                request.Status = RequestStatus.REJECTED.value
                set_item_status(item, ItemStatus.AVAILABLE, now)
                record_history(
                    db,
                    item_id=item_id,
                    activity_type=ActivityType.REQUEST_REJECTED,
                    performed_by=approver_id,
                    occurred_at=now,
                    related_request_id=request_id,
                    description="Request rejected" + (f": {reason}" if reason else ""),
                )
            else:
                request.Status = RequestStatus.APPROVED.value
                request.ApprovedBy = approver_id
                if request.RequestType == RequestType.BORROW.value:
                    rental = create_rental(
                        db,
                        request,
                        item,
                        settings=settings,
                        now=now,
                        start_date=start_date,
                        end_date=end_date,
                    )
                    set_item_status(item, ItemStatus.ON_LOAN, now)
                    description = f"Borrow approved until {rental.EndDate:%Y-%m-%d}"
                    rental_id, calibration_id = rental.RentalID, None
                else:
                    calibration = create_calibration(db, request, now=now, calibration_date=calibration_date)
                    set_item_status(item, ItemStatus.IN_CALIBRATION, now)
                    description = f"Calibration scheduled for {calibration.CalibrationDate:%Y-%m-%d}"
                    rental_id, calibration_id = None, calibration.CalibrationID
                record_history(
                    db,
                    item_id=item_id,
                    activity_type=ActivityType.REQUEST_APPROVED,
                    performed_by=approver_id,
                    occurred_at=now,
                    related_request_id=request_id,
                    rental_id=rental_id,
                    calibration_id=calibration_id,
                    description=description,
                )
            requester_id = request.UserID
            item_name = item.ItemName

    REQUEST_LOGGER.info(
        "Request decided request_id=%s item_id=%s decision=%s approver=%s",
        request_id,
        item_id,
        decision.value,
        approver_id,
    )
    if decision == DecisionOutcome.REJECT:
        message = f"Your request for {item_name} was rejected." + (f" Reason: {reason}" if reason else "")
        deliver(db, requester_id, message, "RequestRejected", request_id, notifier)
    else:
        deliver(db, requester_id, f"Your request for {item_name} was approved.", "RequestApproved", request_id, notifier)
    return request


def get_request(db: Session, request_id: int) -> ItemRequest:
    return load_request(db, request_id)


def list_requests(
    db: Session,
    user_id: str | None = None,
    item_id: int | None = None,
    status: str | None = None,
) -> list[ItemRequest]:
    stmt = select(ItemRequest).order_by(ItemRequest.RequestID.desc())
    if user_id:
        stmt = stmt.where(ItemRequest.UserID == user_id)
    if item_id is not None:
        stmt = stmt.where(ItemRequest.ItemID == item_id)
    if status:
        stmt = stmt.where(ItemRequest.Status == CATALOG.validate("request", status))
    return db.execute(stmt).scalars().all()


def serialize_request(request: ItemRequest) -> dict:
    outcome = resolve_outcome(request)
    payload = {
        "requestID": request.RequestID,
        "userID": request.UserID,
        "itemID": request.ItemID,
        "requestType": request.RequestType,
        "reason": request.Reason,
        "approvedBy": request.ApprovedBy,
        "requestDate": request.RequestDate,
        "requestedStartDate": request.RequestedStartDate,
        "requestedEndDate": request.RequestedEndDate,
        "decisionDate": request.DecisionDate,
        "decisionReason": request.DecisionReason,
        "status": request.Status,
        "createdDate": request.CreatedDate,
        "updatedDate": request.UpdatedDate,
        "rental": None,
        "calibration": None,
    }
    if isinstance(outcome, Approved):
        if isinstance(outcome.fulfillment, BorrowOutcome):
            payload["rental"] = serialize_rental(outcome.fulfillment.rental)
        else:
            payload["calibration"] = serialize_calibration(outcome.fulfillment.calibration)
    return payload
