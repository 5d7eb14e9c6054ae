from __future__ import annotations

import calendar
import logging
from datetime import date, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.statuses import ActivityType, CalibrationResult, CalibrationStatus, ItemStatus, RequestType
from models.workflow_models import Calibration, Document, Item, ItemRequest
from services.errors import (
    ActorRequired,
    CalibrationNotFound,
    DocumentNotFound,
    InvalidCalibrationResult,
    InvalidTransition,
)
from services.history_service import record_history
from services.lifecycle import (
    as_datetime,
    atomic,
    close_request,
    keys_for_calibration,
    load_calibration,
    load_item,
    load_request,
    resolve_now,
    set_item_status,
)
from services.lock_service import COORDINATOR, LockCoordinator
from services.notification_service import Notifier, deliver
from workflow_settings import WorkflowSettings, get_settings

CALIBRATION_LOGGER = logging.getLogger("equipment_workflow.calibrations")

CERTIFICATE_SEQUENCE_KEY = "sequence:certificates"
ROMAN_MONTHS = ("I", "II", "III", "IV", "V", "VI", "VII", "VIII", "IX", "X", "XI", "XII")


def month_to_roman(month: int) -> str:
    if month < 1 or month > 12:
        raise ValueError(f"month must be 1-12, got {month}")
    return ROMAN_MONTHS[month - 1]


def add_months(start: date, months: int) -> date:
    year = start.year + (start.month - 1 + months) // 12
    month = (start.month - 1 + months) % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


def next_calibration_due(last_calibration: date, interval_months: int | None) -> date | None:
    if not interval_months or interval_months <= 0:
        return None
    return add_months(last_calibration, interval_months)


def parse_result(result: CalibrationResult | str) -> CalibrationResult:
    try:
        return CalibrationResult((getattr(result, "value", result) or "").strip().lower())
    except ValueError as exc:
        raise InvalidCalibrationResult(result=str(result)) from exc


def generate_certificate_number(db: Session, prefix: str, issued_on: date) -> str:
    """Format: <n>/<prefix>/<roman month>/<year>, n restarting every year."""
    year_start = datetime(issued_on.year, 1, 1)
    next_year_start = datetime(issued_on.year + 1, 1, 1)
    issued = db.execute(
        select(func.count(Calibration.CalibrationID))
        .where(Calibration.CertificateNumber.is_not(None))
        .where(Calibration.CalibrationDate >= year_start)
        .where(Calibration.CalibrationDate < next_year_start)
    ).scalar()
    sequence = int(issued or 0) + 1
    return f"{sequence}/{prefix}/{month_to_roman(issued_on.month)}/{issued_on.year}"


def create_calibration(
    db: Session,
    request: ItemRequest,
    *,
    now: datetime,
    calibration_date: date | datetime | None = None,
) -> Calibration:
    """Spawn the calibration for an approved calibration request; runs inside the decision transaction."""
    if request.RequestType != RequestType.CALIBRATION.value:
        raise InvalidTransition(
            f"Request {request.RequestID} is a {request.RequestType} request and cannot own a calibration.",
            request_id=request.RequestID,
        )
    calibration = Calibration(
        Request=request,
        CalibrationDate=as_datetime(calibration_date) or request.RequestedStartDate or now,
        Status=CalibrationStatus.SCHEDULED.value,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(calibration)
    db.flush()
    return calibration


def _require_document(db: Session, certificate_url: str) -> None:
    exists = db.execute(
        select(Document.DocumentID).where(Document.FileUrl == certificate_url)
    ).scalar()
    if exists is None:
        raise DocumentNotFound(f"No uploaded document matches {certificate_url}.", certificateUrl=certificate_url)


def _apply_schedule(item: Item, calibration: Calibration, valid_until: date | None) -> None:
    performed_on = calibration.CalibrationDate.date()
    item.LastCalibration = performed_on
    item.NextCalibration = valid_until or next_calibration_due(performed_on, item.CalibrationInterval)
    calibration.ValidUntil = item.NextCalibration


def complete_calibration(
    db: Session,
    *,
    calibration_id: int,
    result: CalibrationResult | str,
    performed_by: str,
    certificate_url: str | None = None,
    valid_until: date | None = None,
    notes: str | None = None,
    settings: WorkflowSettings | None = None,
    coordinator: LockCoordinator | None = None,
    lock_timeout: float | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> Calibration:
    outcome = parse_result(result)
    if not (performed_by or "").strip():
        raise ActorRequired("performedBy is required to complete a calibration.", calibration_id=calibration_id)
    settings = settings or get_settings()
    coordinator = coordinator or COORDINATOR
    now = resolve_now(now)
    timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
    certificate_url = (certificate_url or "").strip() or None

    item_id, request_id = keys_for_calibration(db, calibration_id)
    with coordinator.hold(item_id, request_id, timeout=timeout, extra=(CERTIFICATE_SEQUENCE_KEY,)):
        with atomic(db):
            calibration = load_calibration(db, calibration_id, for_update=True)
            request = load_request(db, request_id, for_update=True)
            item = load_item(db, item_id, for_update=True)
            if calibration.Status != CalibrationStatus.SCHEDULED.value:
                raise InvalidTransition(
                    f"Calibration {calibration_id} is {calibration.Status}; only scheduled calibrations can be completed.",
                    calibration_id=calibration_id,
                    status=calibration.Status,
                )
            if certificate_url:
                _require_document(db, certificate_url)

            calibration.Result = outcome.value
            calibration.CertificateUrl = certificate_url
            calibration.Notes = notes
            calibration.UpdatedDate = now
            if outcome == CalibrationResult.PASS:
                calibration.Status = CalibrationStatus.COMPLETED.value
                calibration.CertificateNumber = generate_certificate_number(
                    db, settings.certificate_prefix, calibration.CalibrationDate.date()
                )
                _apply_schedule(item, calibration, valid_until)
            else:
                calibration.Status = CalibrationStatus.FAILED.value
            close_request(request, now)
            set_item_status(item, ItemStatus.AVAILABLE, now)
            record_history(
                db,
                item_id=item_id,
                activity_type=ActivityType.CALIBRATION_COMPLETED,
                performed_by=performed_by,
                occurred_at=now,
                related_request_id=request_id,
                calibration_id=calibration_id,
                description=f"Calibration {outcome.value}"
                + (f"; certificate {calibration.CertificateNumber}" if calibration.CertificateNumber else ""),
            )
            requester_id = request.UserID
            item_name = item.ItemName

    CALIBRATION_LOGGER.info(
        "Calibration completed calibration_id=%s item_id=%s result=%s certificate=%s performed_by=%s",
        calibration_id,
        item_id,
        outcome.value,
        calibration.CertificateNumber,
        performed_by,
    )
    deliver(
        db,
        requester_id,
        f"Calibration of {item_name} finished with result {outcome.value}.",
        "CalibrationCompleted",
        request_id,
        notifier,
    )
    return calibration


def get_calibration(db: Session, calibration_id: int) -> Calibration:
    calibration = db.get(Calibration, calibration_id)
    if not calibration:
        raise CalibrationNotFound(calibration_id=calibration_id)
    return calibration


def serialize_calibration(calibration: Calibration) -> dict:
    request = calibration.Request
    return {
        "calibrationID": calibration.CalibrationID,
        "requestID": calibration.RequestID,
        "itemID": request.ItemID if request else None,
        "calibrationDate": calibration.CalibrationDate,
        "result": calibration.Result,
        "certificateUrl": calibration.CertificateUrl,
        "certificateNumber": calibration.CertificateNumber,
        "validUntil": calibration.ValidUntil,
        "notes": calibration.Notes,
        "status": calibration.Status,
        "createdDate": calibration.CreatedDate,
        "updatedDate": calibration.UpdatedDate,
    }
