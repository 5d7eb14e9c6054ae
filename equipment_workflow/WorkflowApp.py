import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_workflow_db
from schemas.items import ItemCreateDto, RetireItemRequest
from schemas.maintenance import CompleteMaintenanceRequest, StartMaintenanceRequest
from schemas.notifications import MarkSentRequest
from schemas.requests import (
    CompleteCalibrationRequest,
    DecisionNote,
    DecisionRequest,
    ReturnRequest,
    SubmitRequestDto,
    SweepRequest,
)
from services.availability_service import check_eligible
from services.calibration_service import complete_calibration, get_calibration, serialize_calibration
from services.errors import LockTimeout, WorkflowError
from services.history_service import list_activity, list_item_history, serialize_activity, serialize_history
from services.item_service import create_item, ensure_category, get_item, list_items, retire_item, serialize_item
from services.maintenance_service import (
    complete_maintenance,
    get_maintenance,
    list_maintenance,
    serialize_maintenance,
    start_maintenance,
)
from services.notification_service import list_pending_notifications, mark_sent, serialize_notification
from services.rental_service import (
    get_rental,
    list_rentals,
    queue_due_reminders,
    return_item,
    serialize_rental,
    sweep_overdue,
)
from services.request_service import (
    decide_request,
    get_request,
    list_requests,
    serialize_request,
    submit_request,
)
from services.status_catalog import CATALOG
from workflow_settings import get_settings

API_LOGGER = logging.getLogger("equipment_workflow.api")

app = FastAPI(title="Equipment Workflow")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
async def handle_workflow_error(request: Request, exc: WorkflowError):
    if exc.http_status >= 500 and not exc.retryable:
        API_LOGGER.error("Workflow failure path=%s code=%s reason=%s", request.url.path, exc.code, exc.reason)
    headers = None
    if isinstance(exc, LockTimeout):
        headers = {"Retry-After": "1"}
    payload = exc.to_payload()
    content = {"code": payload.pop("code"), "detail": payload.pop("reason"), "kind": exc.kind}
    if payload:
        content["context"] = jsonable_encoder(payload)
    return JSONResponse(status_code=exc.http_status, content=content, headers=headers)


def _actor(header_value: str | None, payload_value: str | None = None) -> str | None:
    # The identity header wins over anything a client puts in the body.
    return (header_value or "").strip() or (payload_value or "").strip() or None


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_workflow_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/statuses")
def get_statuses(status_type: str | None = Query(None, alias="type")):
    if status_type:
        return {status_type: list(CATALOG.names(status_type))}
    grouped: dict[str, list[str]] = {}
    for kind, name in CATALOG:
        grouped.setdefault(kind, []).append(name)
    return grouped


# Items


@app.get("/api/items")
def get_items(status: str | None = None, db: Session = Depends(get_workflow_db)):
    return [serialize_item(item) for item in list_items(db, status)]


@app.post("/api/items", status_code=201)
def create_item_endpoint(
    payload: ItemCreateDto,
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    category_id = payload.categoryID
    if category_id is None and payload.categoryName:
        category_id = ensure_category(db, payload.categoryName).CategoryID
    item = create_item(
        db,
        name=payload.itemName,
        created_by=_actor(x_user_id),
        category_id=category_id,
        specification=payload.specification,
        serial_number=payload.serialNumber,
        default_rental_days=payload.defaultRentalDays,
        requires_calibration=payload.requiresCalibration,
        calibration_interval=payload.calibrationInterval,
    )
    return serialize_item(item)


@app.get("/api/items/{item_id}")
def get_item_endpoint(item_id: int, db: Session = Depends(get_workflow_db)):
    return serialize_item(get_item(db, item_id))


@app.get("/api/items/{item_id}/eligibility")
def get_item_eligibility(item_id: int, db: Session = Depends(get_workflow_db)):
    eligibility = check_eligible(db, item_id)
    return {"itemID": item_id, "eligible": eligibility.ok, "reason": eligibility.reason}


@app.get("/api/items/{item_id}/history")
def get_item_history(item_id: int, db: Session = Depends(get_workflow_db)):
    get_item(db, item_id)
    return [serialize_history(entry) for entry in list_item_history(db, item_id)]


@app.post("/api/items/{item_id}/retire")
def retire_item_endpoint(
    item_id: int,
    payload: RetireItemRequest | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    payload = payload or RetireItemRequest()
    item = retire_item(
        db,
        item_id=item_id,
        performed_by=_actor(x_user_id, payload.performedBy),
        reason=payload.reason,
    )
    return serialize_item(item)


@app.get("/api/activity")
def get_activity(
    user_id: str | None = Query(None, alias="userID"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_workflow_db),
):
    return [serialize_activity(entry) for entry in list_activity(db, user_id, limit)]


# Requests


@app.get("/api/requests")
def get_requests(
    user_id: str | None = Query(None, alias="userID"),
    item_id: int | None = Query(None, alias="itemID"),
    status: str | None = None,
    db: Session = Depends(get_workflow_db),
):
    return [serialize_request(request) for request in list_requests(db, user_id, item_id, status)]


@app.post("/api/requests", status_code=201)
def submit_request_endpoint(
    payload: SubmitRequestDto,
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    request = submit_request(
        db,
        user_id=_actor(x_user_id, payload.userID),
        item_id=payload.itemID,
        request_type=payload.requestType,
        reason=payload.reason,
        start_date=payload.startDate,
        end_date=payload.endDate,
    )
    return serialize_request(request)


@app.get("/api/requests/{request_id}")
def get_request_endpoint(request_id: int, db: Session = Depends(get_workflow_db)):
    return serialize_request(get_request(db, request_id))


def _decide(db: Session, request_id: int, decision: str, payload: DecisionNote, x_user_id: str | None) -> dict:
    request = decide_request(
        db,
        request_id=request_id,
        approver_id=_actor(x_user_id, payload.approverID),
        outcome=decision,
        reason=payload.reason,
        start_date=payload.startDate,
        end_date=payload.endDate,
        calibration_date=payload.calibrationDate,
    )
    return serialize_request(request)


@app.post("/api/requests/{request_id}/decision")
def decide_request_endpoint(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    return _decide(db, request_id, payload.decision, payload, x_user_id)


@app.post("/api/requests/{request_id}/approve")
def approve_request_endpoint(
    request_id: int,
    payload: DecisionNote | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    return _decide(db, request_id, "approve", payload or DecisionNote(), x_user_id)


@app.post("/api/requests/{request_id}/reject")
def reject_request_endpoint(
    request_id: int,
    payload: DecisionNote | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    return _decide(db, request_id, "reject", payload or DecisionNote(), x_user_id)


# Rentals


@app.get("/api/rentals")
def get_rentals(status: str | None = None, db: Session = Depends(get_workflow_db)):
    now = datetime.now()
    return [serialize_rental(rental, now) for rental in list_rentals(db, status, now)]


@app.post("/api/rentals/sweep-overdue")
def sweep_overdue_endpoint(
    payload: SweepRequest | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    as_of = payload.asOf if payload else None
    marked = sweep_overdue(db, now=as_of, performed_by=_actor(x_user_id))
    API_LOGGER.info("Overdue sweep requested marked=%s", len(marked))
    return {"marked": marked, "count": len(marked)}


@app.get("/api/rentals/{rental_id}")
def get_rental_endpoint(rental_id: int, db: Session = Depends(get_workflow_db)):
    return serialize_rental(get_rental(db, rental_id))


@app.post("/api/rentals/{rental_id}/return")
def return_rental_endpoint(
    rental_id: int,
    payload: ReturnRequest | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    payload = payload or ReturnRequest()
    rental = return_item(
        db,
        rental_id=rental_id,
        performed_by=_actor(x_user_id, payload.performedBy),
        return_date=payload.returnDate,
        condition=payload.condition,
    )
    return serialize_rental(rental)


# Calibrations


@app.get("/api/calibrations/{calibration_id}")
def get_calibration_endpoint(calibration_id: int, db: Session = Depends(get_workflow_db)):
    return serialize_calibration(get_calibration(db, calibration_id))


@app.post("/api/calibrations/{calibration_id}/complete")
def complete_calibration_endpoint(
    calibration_id: int,
    payload: CompleteCalibrationRequest,
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    calibration = complete_calibration(
        db,
        calibration_id=calibration_id,
        result=payload.result,
        performed_by=_actor(x_user_id, payload.performedBy),
        certificate_url=payload.certificateUrl,
        valid_until=payload.validUntil,
        notes=payload.notes,
    )
    return serialize_calibration(calibration)


# Maintenance


@app.get("/api/maintenance")
def get_maintenance_list(
    item_id: int | None = Query(None, alias="itemID"),
    status: str | None = None,
    db: Session = Depends(get_workflow_db),
):
    return [serialize_maintenance(row) for row in list_maintenance(db, item_id, status)]


@app.post("/api/items/{item_id}/maintenance", status_code=201)
def start_maintenance_endpoint(
    item_id: int,
    payload: StartMaintenanceRequest | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    payload = payload or StartMaintenanceRequest()
    maintenance = start_maintenance(
        db,
        item_id=item_id,
        performed_by=_actor(x_user_id, payload.performedBy),
        reason=payload.reason,
    )
    return serialize_maintenance(maintenance)


@app.get("/api/maintenance/{maintenance_id}")
def get_maintenance_endpoint(maintenance_id: int, db: Session = Depends(get_workflow_db)):
    return serialize_maintenance(get_maintenance(db, maintenance_id))


@app.post("/api/maintenance/{maintenance_id}/complete")
def complete_maintenance_endpoint(
    maintenance_id: int,
    payload: CompleteMaintenanceRequest | None = Body(None),
    db: Session = Depends(get_workflow_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    payload = payload or CompleteMaintenanceRequest()
    maintenance = complete_maintenance(
        db,
        maintenance_id=maintenance_id,
        performed_by=_actor(x_user_id, payload.performedBy),
        findings=payload.findings,
        action_taken=payload.actionTaken,
    )
    return serialize_maintenance(maintenance)


# Notifications


@app.post("/api/notifications/run")
def run_notifications(
    days_ahead: int | None = Query(None, alias="daysAhead", ge=0),
    db: Session = Depends(get_workflow_db),
):
    created = queue_due_reminders(db, days_ahead=days_ahead)
    API_LOGGER.info("Reminder run created=%s days_ahead=%s", created, days_ahead)
    return {"created": created, "daysAhead": get_settings().due_soon_days if days_ahead is None else days_ahead}


@app.get("/api/notifications/pending")
def get_pending_notifications(
    user_id: str | None = Query(None, alias="userID"),
    db: Session = Depends(get_workflow_db),
):
    return [serialize_notification(row) for row in list_pending_notifications(db, user_id)]


@app.post("/api/notifications/mark-sent")
def mark_notifications_sent(payload: MarkSentRequest, db: Session = Depends(get_workflow_db)):
    return {"updated": mark_sent(db, payload.notificationIDs)}
