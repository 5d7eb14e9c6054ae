from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.statuses import OPEN_REQUEST_STATES, ItemStatus
from models.workflow_models import Item, ItemRequest
from services.errors import ItemNotFound

ITEM_UNAVAILABLE = "item_unavailable"


@dataclass(frozen=True)
class Eligibility:
    ok: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> "Eligibility":
        return cls(True)

    @classmethod
    def conflict(cls, reason: str = ITEM_UNAVAILABLE) -> "Eligibility":
        return cls(False, reason)


def evaluate_eligibility(item_status: str | None, open_request_count: int) -> Eligibility:
    if item_status != ItemStatus.AVAILABLE.value or open_request_count > 0:
        return Eligibility.conflict()
    return Eligibility.accept()


def count_open_requests(db: Session, item_id: int) -> int:
    total = db.execute(
        select(func.count(ItemRequest.RequestID))
        .where(ItemRequest.ItemID == item_id)
        .where(ItemRequest.Status.in_(sorted(OPEN_REQUEST_STATES)))
    ).scalar()
    return int(total or 0)


def eligibility_for(db: Session, item: Item) -> Eligibility:
    return evaluate_eligibility(item.Status, count_open_requests(db, item.ItemID))


def check_eligible(db: Session, item_id: int) -> Eligibility:
    """Snapshot check only; callers that act on the answer must hold the item lock."""
    item = db.get(Item, item_id, populate_existing=True)
    if not item:
        raise ItemNotFound(item_id=item_id)
    return eligibility_for(db, item)
