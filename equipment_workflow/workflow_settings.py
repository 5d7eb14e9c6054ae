from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache


@dataclass(frozen=True)
class WorkflowSettings:
    daily_fine_rate: Decimal = Decimal("0")
    default_rental_days: int = 7
    lock_timeout_seconds: float = 10.0
    certificate_prefix: str = "CAL"
    due_soon_days: int = 7
    system_actor_id: str = "system"


def _env(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip()


def _parse_decimal(name: str, default: str) -> Decimal:
    raw = _env(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise RuntimeError(f"{name} must be a decimal number, got {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise RuntimeError(f"{name} must be zero or greater, got {raw!r}")
    return value


def _parse_int(name: str, default: str, minimum: int) -> int:
    raw = _env(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be at least {minimum}, got {value}")
    return value


def _parse_float(name: str, default: str) -> float:
    raw = _env(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def load_settings() -> WorkflowSettings:
    return WorkflowSettings(
        daily_fine_rate=_parse_decimal("WORKFLOW_DAILY_FINE_RATE", "0"),
        default_rental_days=_parse_int("WORKFLOW_DEFAULT_RENTAL_DAYS", "7", minimum=1),
        lock_timeout_seconds=_parse_float("WORKFLOW_LOCK_TIMEOUT_SECONDS", "10"),
        certificate_prefix=_env("WORKFLOW_CERTIFICATE_PREFIX", "CAL"),
        due_soon_days=_parse_int("WORKFLOW_DUE_SOON_DAYS", "7", minimum=0),
        system_actor_id=_env("WORKFLOW_SYSTEM_ACTOR", "system"),
    )


@lru_cache(maxsize=1)
def get_settings() -> WorkflowSettings:
    return load_settings()
