from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import ActivityType
from models.workflow_models import ActivityLog, ItemHistory

ACTION_LABELS = {
    ActivityType.ITEM_CREATED.value: "Item created",
    ActivityType.ITEM_RETIRED.value: "Item retired",
    ActivityType.REQUEST_SUBMITTED.value: "Request submitted",
    ActivityType.REQUEST_APPROVED.value: "Request approved",
    ActivityType.REQUEST_REJECTED.value: "Request rejected",
    ActivityType.ITEM_RETURNED.value: "Item returned",
    ActivityType.RENTAL_OVERDUE.value: "Rental overdue",
    ActivityType.CALIBRATION_COMPLETED.value: "Calibration completed",
    ActivityType.MAINTENANCE_STARTED.value: "Maintenance started",
    ActivityType.MAINTENANCE_COMPLETED.value: "Maintenance completed",
}


def record_history(
    db: Session,
    *,
    item_id: int,
    activity_type: ActivityType,
    performed_by: str,
    occurred_at: datetime,
    related_request_id: int | None = None,
    description: str | None = None,
    rental_id: int | None = None,
    calibration_id: int | None = None,
    maintenance_id: int | None = None,
) -> ItemHistory:
    """Append one audit row for a transition inside the caller's transaction.

    The flush makes storage failures surface here, so the caller's atomic
    block rolls the whole transition back instead of committing it unaudited.
    """
    entry = ItemHistory(
        ItemID=item_id,
        ActivityType=activity_type.value,
        RelatedRequestID=related_request_id,
        Description=description,
        PerformedBy=performed_by,
        ActivityDate=occurred_at,
    )
    db.add(entry)
    db.add(
        ActivityLog(
            UserID=performed_by,
            ActivityType=activity_type.value,
            Action=ACTION_LABELS.get(activity_type.value, activity_type.value),
            Details=description,
            ItemID=item_id,
            RequestID=related_request_id,
            RentalID=rental_id,
            CalibrationID=calibration_id,
            MaintenanceID=maintenance_id,
            CreatedAt=occurred_at,
        )
    )
    db.flush()
    return entry


def list_item_history(db: Session, item_id: int) -> list[ItemHistory]:
    return db.execute(
        select(ItemHistory)
        .where(ItemHistory.ItemID == item_id)
        .order_by(ItemHistory.HistoryID)
    ).scalars().all()


def list_activity(db: Session, user_id: str | None = None, limit: int = 100) -> list[ActivityLog]:
    stmt = select(ActivityLog).order_by(ActivityLog.ActivityID.desc()).limit(max(1, limit))
    if user_id:
        stmt = stmt.where(ActivityLog.UserID == user_id)
    return db.execute(stmt).scalars().all()


def serialize_history(entry: ItemHistory) -> dict:
    return {
        "historyID": entry.HistoryID,
        "itemID": entry.ItemID,
        "activityType": entry.ActivityType,
        "relatedRequestID": entry.RelatedRequestID,
        "description": entry.Description,
        "performedBy": entry.PerformedBy,
        "date": entry.ActivityDate,
    }


def serialize_activity(entry: ActivityLog) -> dict:
    return {
        "activityID": entry.ActivityID,
        "userID": entry.UserID,
        "activityType": entry.ActivityType,
        "action": entry.Action,
        "details": entry.Details,
        "itemID": entry.ItemID,
        "requestID": entry.RequestID,
        "rentalID": entry.RentalID,
        "calibrationID": entry.CalibrationID,
        "maintenanceID": entry.MaintenanceID,
        "createdAt": entry.CreatedAt,
    }
