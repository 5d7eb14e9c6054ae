from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import ActivityType, ItemStatus, MaintenanceStatus
from models.workflow_models import Maintenance
from services.availability_service import eligibility_for
from services.errors import ActorRequired, InvalidTransition, ItemUnavailable, MaintenanceNotFound
from services.history_service import record_history
from services.lifecycle import atomic, end_read, load_item, resolve_now, set_item_status
from services.lock_service import COORDINATOR, LockCoordinator
from services.status_catalog import CATALOG
from workflow_settings import WorkflowSettings, get_settings

MAINTENANCE_LOGGER = logging.getLogger("equipment_workflow.maintenance")


def _load_maintenance(db: Session, maintenance_id: int, *, for_update: bool = False) -> Maintenance:
    stmt = select(Maintenance).where(Maintenance.MaintenanceID == maintenance_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    maintenance = db.execute(stmt).scalars().first()
    if not maintenance:
        raise MaintenanceNotFound(maintenance_id=maintenance_id)
    return maintenance


def start_maintenance(
    db: Session,
    *,
    item_id: int,
    performed_by: str,
    reason: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
) -> Maintenance:
    """Take an idle available item out of circulation for maintenance."""
    if not (performed_by or "").strip():
        raise ActorRequired("performedBy is required to start maintenance.", item_id=item_id)
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
                MAINTENANCE_LOGGER.warning(
                    "Maintenance refused item_id=%s reason=%s item_status=%s",
                    item_id,
                    eligibility.reason,
                    item.Status,
                )
                raise ItemUnavailable(eligibility.reason, item_id=item_id)

            maintenance = Maintenance(
                ItemID=item_id,
                UserID=performed_by,
                Reason=reason,
                StartDate=now,
                Status=MaintenanceStatus.IN_PROGRESS.value,
                CreatedDate=now,
                UpdatedDate=now,
            )
            db.add(maintenance)
            db.flush()
            set_item_status(item, ItemStatus.IN_MAINTENANCE, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.MAINTENANCE_STARTED,
                performed_by=performed_by,
                occurred_at=now,
                maintenance_id=maintenance.MaintenanceID,
                description="Maintenance started" + (f": {reason}" if reason else ""),
            )

    MAINTENANCE_LOGGER.info(
        "Maintenance started maintenance_id=%s item_id=%s performed_by=%s",
        maintenance.MaintenanceID,
        item_id,
        performed_by,
    )
    return maintenance


def complete_maintenance(
    db: Session,
    *,
    maintenance_id: int,
    performed_by: str,
    findings: str | None = None,
    action_taken: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
) -> Maintenance:
    if not (performed_by or "").strip():
        raise ActorRequired("performedBy is required to complete maintenance.", maintenance_id=maintenance_id)
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout

    item_id = db.execute(
        select(Maintenance.ItemID).where(Maintenance.MaintenanceID == maintenance_id)
    ).scalar()
    end_read(db)
    if item_id is None:
        raise MaintenanceNotFound(maintenance_id=maintenance_id)

    with coordinator.hold(item_id, timeout=timeout):
        with atomic(db):
            maintenance = _load_maintenance(db, maintenance_id, for_update=True)
            item = load_item(db, item_id, for_update=True)
            if maintenance.Status != MaintenanceStatus.IN_PROGRESS.value:
                raise InvalidTransition(
                    f"Maintenance {maintenance_id} is {maintenance.Status}; only in-progress maintenance can be completed.",
                    maintenance_id=maintenance_id,
                    status=maintenance.Status,
                )
            maintenance.Status = MaintenanceStatus.COMPLETED.value
            maintenance.EndDate = now
            maintenance.Findings = findings
            maintenance.ActionTaken = action_taken
            maintenance.CompletedBy = performed_by
            maintenance.UpdatedDate = now
            set_item_status(item, ItemStatus.AVAILABLE, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.MAINTENANCE_COMPLETED,
                performed_by=performed_by,
                occurred_at=now,
                maintenance_id=maintenance_id,
                description="Maintenance completed" + (f": {findings}" if findings else ""),
            )

    MAINTENANCE_LOGGER.info(
        "Maintenance completed maintenance_id=%s item_id=%s performed_by=%s",
        maintenance_id,
        item_id,
        performed_by,
    )
    return maintenance


def get_maintenance(db: Session, maintenance_id: int) -> Maintenance:
    return _load_maintenance(db, maintenance_id)


def list_maintenance(db: Session, item_id: int | None = None, status: str | None = None) -> list[Maintenance]:
    stmt = select(Maintenance).order_by(Maintenance.MaintenanceID.desc())
    if item_id is not None:
        stmt = stmt.where(Maintenance.ItemID == item_id)
    if status:
        stmt = stmt.where(Maintenance.Status == CATALOG.validate("maintenance", status))
    return db.execute(stmt).scalars().all()


def serialize_maintenance(maintenance: Maintenance) -> dict:
    return {
        "maintenanceID": maintenance.MaintenanceID,
        "itemID": maintenance.ItemID,
        "userID": maintenance.UserID,
        "reason": maintenance.Reason,
        "startDate": maintenance.StartDate,
        "endDate": maintenance.EndDate,
        "findings": maintenance.Findings,
        "actionTaken": maintenance.ActionTaken,
        "completedBy": maintenance.CompletedBy,
        "status": maintenance.Status,
        "createdDate": maintenance.CreatedDate,
        "updatedDate": maintenance.UpdatedDate,
    }
