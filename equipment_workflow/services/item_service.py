from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import ActivityType, ItemStatus
from models.workflow_models import Category, Item
from services.availability_service import eligibility_for
from services.errors import ActorRequired, InvalidTransition, ItemNotFound, ValidationFailure
from services.history_service import record_history
from services.lifecycle import atomic, end_read, load_item, resolve_now, set_item_status
from services.lock_service import COORDINATOR, LockCoordinator
from services.status_catalog import CATALOG
from workflow_settings import WorkflowSettings, get_settings

ITEM_LOGGER = logging.getLogger("equipment_workflow.items")


def _parse_seq(serial_number: str) -> Optional[int]:
    parts = serial_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_serial_number(db: Session, today: date | None = None) -> str:
    year = (today or date.today()).year
    prefix = f"EQ{year}-"

    existing = db.execute(
        select(Item.SerialNumber).where(Item.SerialNumber.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for serial in existing:
        if not serial:
            continue
        seq = _parse_seq(serial)
        if seq and seq > max_seq:
            max_seq = seq

    return f"{prefix}{max_seq + 1:04d}"


def ensure_category(db: Session, name: str, description: str | None = None) -> Category:
    category_name = (name or "").strip()
    if not category_name:
        raise ValidationFailure("Category name is required.")
    category = db.execute(
        select(Category).where(Category.CategoryName == category_name)
    ).scalars().first()
    if category:
        return category
    category = Category(CategoryName=category_name, Description=description, CreatedDate=datetime.now())
    db.add(category)
    db.flush()
    return category


def create_item(
    db: Session,
    *,
    name: str,
    created_by: str,
    category_id: int | None = None,
    specification: str | None = None,
    serial_number: str | None = None,
    default_rental_days: int | None = None,
    requires_calibration: bool = False,
    calibration_interval: int | None = None,
    now: datetime | None = None,
) -> Item:
    item_name = (name or "").strip()
    if not item_name:
        raise ValidationFailure("Item name is required.")
    if not (created_by or "").strip():
        raise ActorRequired("createdBy is required to register an item.")
    now = resolve_now(now)

    with atomic(db):
        item = Item(
            ItemName=item_name,
            CategoryID=category_id,
            Specification=specification,
            SerialNumber=(serial_number or "").strip() or generate_next_serial_number(db, now.date()),
            Status=ItemStatus.AVAILABLE.value,
            DefaultRentalDays=default_rental_days,
            RequiresCalibration=bool(requires_calibration),
            CalibrationInterval=calibration_interval if requires_calibration else None,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(item)
        db.flush()
        record_history(
            db,
            item_id=item.ItemID,
            activity_type=ActivityType.ITEM_CREATED,
            performed_by=created_by,
            occurred_at=now,
            description=f"Registered as {item.SerialNumber}",
        )
    ITEM_LOGGER.info("Item created item_id=%s serial=%s created_by=%s", item.ItemID, item.SerialNumber, created_by)
    return item


def retire_item(
    db: Session,
    *,
    item_id: int,
    performed_by: str,
    reason: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
) -> Item:
    if not (performed_by or "").strip():
        raise ActorRequired("performedBy is required to retire an item.", item_id=item_id)
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    end_read(db)
    with coordinator.hold(item_id, timeout=timeout):
        with atomic(db):
            item = load_item(db, item_id, for_update=True)
            if not eligibility_for(db, item).ok:
                raise InvalidTransition(
                    f"Item {item_id} is {item.Status}; only idle available items can be retired.",
                    item_id=item_id,
                    status=item.Status,
                )
            set_item_status(item, ItemStatus.RETIRED, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.ITEM_RETIRED,
                performed_by=performed_by,
                occurred_at=now,
                description=reason or "Retired from service",
            )
    ITEM_LOGGER.info("Item retired item_id=%s performed_by=%s", item_id, performed_by)
    return item


def get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise ItemNotFound(item_id=item_id)
    return item


def list_items(db: Session, status: str | None = None) -> list[Item]:
    stmt = select(Item).order_by(Item.ItemName, Item.ItemID)
    if status:
        stmt = stmt.where(Item.Status == CATALOG.validate("item", status))
    return db.execute(stmt).scalars().all()


def serialize_item(item: Item) -> dict:
    return {
        "itemID": item.ItemID,
        "itemName": item.ItemName,
        "categoryID": item.CategoryID,
        "specification": item.Specification,
        "serialNumber": item.SerialNumber,
        "status": item.Status,
        "defaultRentalDays": item.DefaultRentalDays,
        "requiresCalibration": bool(item.RequiresCalibration),
        "calibrationInterval": item.CalibrationInterval,
        "lastCalibration": item.LastCalibration,
        "nextCalibration": item.NextCalibration,
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
