from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, time

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import ItemStatus, RequestStatus
from models.workflow_models import Calibration, Item, ItemRequest, Rental
from services.errors import CalibrationNotFound, ItemNotFound, RentalNotFound, RequestNotFound


def resolve_now(now: datetime | None = None) -> datetime:
    return as_datetime(now) or datetime.now()


def as_datetime(value: date | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        # Stored timestamps are naive local time.
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)


def end_read(db: Session) -> None:
    """Close any open read transaction before waiting on a workflow lock.

    A reader that keeps its snapshot while queueing for a lock can block the
    lock holder's commit on databases with file or table level locking.
    """
    if db.new or db.dirty or db.deleted:
        raise RuntimeError("Session carries uncommitted changes; commit or roll back before a workflow operation.")
    if db.in_transaction():
        db.rollback()


@contextmanager
def atomic(db: Session) -> Iterator[None]:
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def load_item(db: Session, item_id: int, *, for_update: bool = False) -> Item:
    stmt = select(Item).where(Item.ItemID == item_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    item = db.execute(stmt).scalars().first()
    if not item:
        raise ItemNotFound(item_id=item_id)
    return item


def load_request(db: Session, request_id: int, *, for_update: bool = False) -> ItemRequest:
    stmt = select(ItemRequest).where(ItemRequest.RequestID == request_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    request = db.execute(stmt).scalars().first()
    if not request:
        raise RequestNotFound(request_id=request_id)
    return request


def load_rental(db: Session, rental_id: int, *, for_update: bool = False) -> Rental:
    stmt = select(Rental).where(Rental.RentalID == rental_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise RentalNotFound(rental_id=rental_id)
    return rental


def load_calibration(db: Session, calibration_id: int, *, for_update: bool = False) -> Calibration:
    stmt = select(Calibration).where(Calibration.CalibrationID == calibration_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    calibration = db.execute(stmt).scalars().first()
    if not calibration:
        raise CalibrationNotFound(calibration_id=calibration_id)
    return calibration


def item_id_for_request(db: Session, request_id: int) -> int:
    item_id = db.execute(
        select(ItemRequest.ItemID).where(ItemRequest.RequestID == request_id)
    ).scalar()
    end_read(db)
    if item_id is None:
        raise RequestNotFound(request_id=request_id)
    return int(item_id)


def keys_for_rental(db: Session, rental_id: int) -> tuple[int, int]:
    row = db.execute(
        select(ItemRequest.ItemID, ItemRequest.RequestID)
        .join(Rental, Rental.RequestID == ItemRequest.RequestID)
        .where(Rental.RentalID == rental_id)
    ).first()
    end_read(db)
    if row is None:
        raise RentalNotFound(rental_id=rental_id)
    return int(row[0]), int(row[1])


def keys_for_calibration(db: Session, calibration_id: int) -> tuple[int, int]:
    row = db.execute(
        select(ItemRequest.ItemID, ItemRequest.RequestID)
        .join(Calibration, Calibration.RequestID == ItemRequest.RequestID)
        .where(Calibration.CalibrationID == calibration_id)
    ).first()
    end_read(db)
    if row is None:
        raise CalibrationNotFound(calibration_id=calibration_id)
    return int(row[0]), int(row[1])


def set_item_status(item: Item, status: ItemStatus, now: datetime) -> None:
    item.Status = status.value
    item.UpdatedDate = now


def close_request(request: ItemRequest, now: datetime) -> None:
    request.Status = RequestStatus.CLOSED.value
    request.UpdatedDate = now
