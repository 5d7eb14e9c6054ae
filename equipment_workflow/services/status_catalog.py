from __future__ import annotations

from collections.abc import Iterator, Mapping
from enum import Enum
from types import MappingProxyType

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.statuses import CalibrationStatus, ItemStatus, MaintenanceStatus, RentalStatus, RequestStatus, StatusKind
from models.workflow_models import Status
from services.errors import UnknownStatus


class StatusCatalog:
    """Read-only (type, name) lookup built once from the status enums."""

    def __init__(self, enums_by_kind: Mapping[str, type[Enum]]):
        entries: dict[tuple[str, str], Enum] = {}
        kinds: dict[type[Enum], str] = {}
        for kind, enum_cls in enums_by_kind.items():
            kinds[enum_cls] = kind
            for member in enum_cls:
                entries[(kind, member.value)] = member
        self._entries = MappingProxyType(entries)
        self._kinds = MappingProxyType(kinds)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, status_type: str, name: str) -> Enum:
        key = ((status_type or "").strip().lower(), (name or "").strip().lower())
        member = self._entries.get(key)
        if member is None:
            raise UnknownStatus(f"Unknown status {name!r} for type {status_type!r}.", type=status_type, name=name)
        return member

    def type_of(self, status: Enum) -> str:
        kind = self._kinds.get(type(status))
        if kind is None:
            raise UnknownStatus(f"{status!r} is not a catalogued status.")
        return kind

    def names(self, status_type: str) -> tuple[str, ...]:
        kind = (status_type or "").strip().lower()
        names = tuple(name for entry_kind, name in self._entries if entry_kind == kind)
        if not names:
            raise UnknownStatus(f"Unknown status type {status_type!r}.", type=status_type)
        return names

    def validate(self, status_type: str, name: str) -> str:
        return self.lookup(status_type, name).value

    def seed(self, db: Session) -> int:
        existing = {
            (row.Type, row.Name)
            for row in db.execute(select(Status)).scalars().all()
        }
        created = 0
        for kind, name in self._entries:
            if (kind, name) in existing:
                continue
            db.add(Status(Type=kind, Name=name))
            created += 1
        db.commit()
        return created


CATALOG = StatusCatalog(
    {
        StatusKind.ITEM.value: ItemStatus,
        StatusKind.REQUEST.value: RequestStatus,
        StatusKind.RENTAL.value: RentalStatus,
        StatusKind.CALIBRATION.value: CalibrationStatus,
        StatusKind.MAINTENANCE.value: MaintenanceStatus,
    }
)