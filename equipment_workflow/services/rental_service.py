from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import RETURNABLE_RENTAL_STATES, ActivityType, ItemStatus, RentalStatus, RequestType
from models.workflow_models import Item, ItemRequest, Notification, Rental
from services.errors import ActorRequired, InvalidDateRange, InvalidTransition, LockTimeout, RentalNotFound
from services.history_service import record_history
from services.lifecycle import (
    as_datetime,
    atomic,
    close_request,
    end_read,
    keys_for_rental,
    load_item,
    load_rental,
    load_request,
    resolve_now,
    set_item_status,
)
from services.lock_service import COORDINATOR, LockCoordinator
from services.notification_service import Notifier, deliver
from services.status_catalog import CATALOG
from workflow_settings import WorkflowSettings, get_settings

RENTAL_LOGGER = logging.getLogger("equipment_workflow.rentals")

CENT = Decimal("0.01")
ONE_DAY = timedelta(days=1)


def days_late(end_date: date | datetime, return_date: date | datetime) -> int:
    late_by = as_datetime(return_date) - as_datetime(end_date)
    if late_by <= timedelta(0):
        return 0
    whole_days, remainder = divmod(late_by, ONE_DAY)
    # Any started day counts as a full day late.
    return whole_days + (1 if remainder else 0)


def calculate_fine(end_date: date | datetime, return_date: date | datetime, daily_rate: Decimal | str | int) -> Decimal:
    rate = Decimal(str(daily_rate))
    return (Decimal(days_late(end_date, return_date)) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def is_overdue(rental: Rental, now: datetime | None = None) -> bool:
    if rental.ActualReturnDate is not None or rental.Status == RentalStatus.RETURNED.value:
        return False
    return resolve_now(now) > rental.EndDate


def rental_state(rental: Rental, now: datetime | None = None) -> RentalStatus:
    if rental.Status == RentalStatus.RETURNED.value:
        return RentalStatus.RETURNED
    if is_overdue(rental, now):
        return RentalStatus.OVERDUE
    return RentalStatus.ACTIVE


def resolve_rental_window(
    request: ItemRequest,
    item: Item,
    settings: WorkflowSettings,
    now: datetime,
    start_date: date | datetime | None = None,
    end_date: date | datetime | None = None,
) -> tuple[datetime, datetime]:
    start = as_datetime(start_date) or request.RequestedStartDate or now
    end = as_datetime(end_date) or request.RequestedEndDate
    if end is None:
        duration = item.DefaultRentalDays or settings.default_rental_days
        end = start + timedelta(days=max(1, int(duration)))
    if end < start:
        raise InvalidDateRange(request_id=request.RequestID)
    return start, end


def create_rental(
    db: Session,
    request: ItemRequest,
    item: Item,
    *,
    settings: WorkflowSettings,
    now: datetime,
    start_date: date | datetime | None = None,
    end_date: date | datetime | None = None,
) -> Rental:
    """Spawn the rental for an approved borrow request; runs inside the decision transaction."""
    if request.RequestType != RequestType.BORROW.value:
        raise InvalidTransition(
            f"Request {request.RequestID} is a {request.RequestType} request and cannot own a rental.",
            request_id=request.RequestID,
        )
    start, end = resolve_rental_window(request, item, settings, now, start_date, end_date)
    rental = Rental(
        Request=request,
        StartDate=start,
        EndDate=end,
        Status=RentalStatus.ACTIVE.value,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(rental)
    db.flush()
    return rental


def _describe_return(late_days: int, fine: Decimal) -> str:
    if late_days <= 0:
        return "Returned on time"
    return f"Returned {late_days} day(s) late; fine {fine}"


def return_item(
    db: Session,
    *,
    rental_id: int,
    performed_by: str,
    return_date: date | datetime | None = None,
    condition: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> Rental:
    if not (performed_by or "").strip():
        raise ActorRequired("performedBy is required to return an item.", rental_id=rental_id)
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    returned_at = as_datetime(return_date) or now
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    item_id, request_id = keys_for_rental(db, rental_id)
    with coordinator.hold(item_id, request_id, timeout=timeout):
        with atomic(db):
            rental = load_rental(db, rental_id, for_update=True)
            request = load_request(db, request_id, for_update=True)
            item = load_item(db, item_id, for_update=True)
            if rental.Status not in RETURNABLE_RENTAL_STATES:
                raise InvalidTransition(
                    f"Rental {rental_id} is {rental.Status}; only active or overdue rentals can be returned.",
                    rental_id=rental_id,
                    status=rental.Status,
                )
            if returned_at < rental.StartDate:
                raise InvalidDateRange("returnDate must be on or after the rental start.", rental_id=rental_id)

            late_days = days_late(rental.EndDate, returned_at)
            fine = calculate_fine(rental.EndDate, returned_at, settings.daily_fine_rate)
            rental.ActualReturnDate = returned_at
            rental.FineAmount = fine
            rental.ReturnCondition = condition
            rental.Status = RentalStatus.RETURNED.value
            rental.UpdatedDate = now
            close_request(request, now)
            set_item_status(item, ItemStatus.AVAILABLE, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.ITEM_RETURNED,
                performed_by=performed_by,
                occurred_at=now,
                related_request_id=request_id,
                rental_id=rental_id,
                description=_describe_return(late_days, fine),
            )
            borrower_id = request.UserID
            item_name = item.ItemName

    RENTAL_LOGGER.info(
        "Rental returned rental_id=%s item_id=%s days_late=%s fine=%s performed_by=%s",
        rental_id,
        item_id,
        late_days,
        fine,
        performed_by,
    )
    message = f"Return of {item_name} recorded."
    if fine > 0:
        message = f"Return of {item_name} recorded {late_days} day(s) late. Fine due: {fine}."
    deliver(db, borrower_id, message, "ItemReturned", request_id, notifier)
    return rental


def sweep_overdue(
    db: Session,
    *,
    now: datetime | None = None,
    performed_by: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    notifier: Notifier | None = None,
) -> list[int]:
    """Persist the overdue label on active rentals whose end date has passed."""
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    actor = performed_by or settings.system_actor_id
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    candidates = db.execute(
        select(Rental.RentalID)
        .where(Rental.Status == RentalStatus.ACTIVE.value)
        .where(Rental.ActualReturnDate.is_(None))
        .where(Rental.EndDate < now)
        .order_by(Rental.RentalID)
    ).scalars().all()
    end_read(db)

    marked: list[int] = []
    for rental_id in candidates:
        item_id, request_id = keys_for_rental(db, rental_id)
        borrower_id = None
        try:
            with coordinator.hold(item_id, request_id, timeout=timeout):
                with atomic(db):
                    rental = load_rental(db, rental_id, for_update=True)
                    if rental.Status == RentalStatus.ACTIVE.value and is_overdue(rental, now):
                        rental.Status = RentalStatus.OVERDUE.value
                        rental.UpdatedDate = now
                        record_history(
                            db,
                            item_id=item_id,
                            activity_type=ActivityType.RENTAL_OVERDUE,
                            performed_by=actor,
                            occurred_at=now,
                            related_request_id=request_id,
                            rental_id=rental_id,
                            description=f"Rental passed its end date {rental.EndDate:%Y-%m-%d}",
                        )
                        borrower_id = rental.Request.UserID
        except LockTimeout:
            RENTAL_LOGGER.warning("Overdue sweep skipped rental_id=%s reason=lock_timeout", rental_id)
            continue
        if borrower_id is None:
            continue
        marked.append(rental_id)
        deliver(db, borrower_id, f"Rental {rental_id} is overdue. Please return the item.", "Overdue", request_id, notifier)

    if marked:
        RENTAL_LOGGER.info("Overdue sweep marked=%s as_of=%s", len(marked), now.isoformat())
    return marked


def queue_due_reminders(
    db: Session,
    *,
    today: date | None = None,
    days_ahead: int | None = None,
    settings: WorkflowSettings | None = None,
    notifier: Notifier | None = None,
) -> int:
    settings = settings or get_settings()
    today = today or date.today()
    window = settings.due_soon_days if days_ahead is None else max(0, int(days_ahead))
    day_start = as_datetime(today)
    window_end = day_start + timedelta(days=window + 1)

    rows = db.execute(
        select(Rental.RentalID, Rental.EndDate, ItemRequest.RequestID, ItemRequest.UserID)
        .join(ItemRequest, ItemRequest.RequestID == Rental.RequestID)
        .where(Rental.Status.in_(sorted(RETURNABLE_RENTAL_STATES)))
        .where(Rental.ActualReturnDate.is_(None))
        .where(Rental.EndDate < window_end)
        .order_by(Rental.RentalID)
    ).all()
    already_sent = {
        (row[0], row[1])
        for row in db.execute(
            select(Notification.RequestID, Notification.NotificationType)
            .where(Notification.CreatedAt >= day_start)
            .where(Notification.NotificationType.in_(["DueSoon", "Overdue"]))
        ).all()
    }
    end_read(db)

    created = 0
    for rental_id, end_at, request_id, user_id in rows:
        notification_type = "Overdue" if end_at < day_start else "DueSoon"
        if (request_id, notification_type) in already_sent:
            continue
        if notification_type == "Overdue":
            message = f"Rental {rental_id} was due {end_at:%Y-%m-%d} and is overdue."
        else:
            message = f"Rental {rental_id} is due {end_at:%Y-%m-%d}."
        if deliver(db, user_id, message, notification_type, request_id, notifier):
            created += 1
    return created


def get_rental(db: Session, rental_id: int) -> Rental:
    rental = db.get(Rental, rental_id)
    if not rental:
        raise RentalNotFound(rental_id=rental_id)
    return rental


def list_rentals(db: Session, status: str | None = None, now: datetime | None = None) -> list[Rental]:
    rentals = db.execute(select(Rental).order_by(Rental.RentalID.desc())).scalars().all()
    if not status:
        return rentals
    wanted = CATALOG.lookup("rental", status)
    return [rental for rental in rentals if rental_state(rental, now) == wanted]


def serialize_rental(rental: Rental, now: datetime | None = None) -> dict:
    request = rental.Request
    return {
        "rentalID": rental.RentalID,
        "requestID": rental.RequestID,
        "userID": request.UserID if request else None,
        "itemID": request.ItemID if request else None,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "actualReturnDate": rental.ActualReturnDate,
        "fineAmount": rental.FineAmount,
        "returnCondition": rental.ReturnCondition,
        "status": rental.Status,
        "state": rental_state(rental, now).value,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
    }
