from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from typing import TypeVar

from services.errors import LockTimeout

LOCK_LOGGER = logging.getLogger("equipment_workflow.locks")

T = TypeVar("T")


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockRegistry:
    """One mutex per key; entries live only while someone holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders <= 0 and self._entries.get(key) is entry:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        entry = self._checkout(key)
        wait = -1 if timeout is None or timeout < 0 else timeout
        if not entry.lock.acquire(timeout=wait):
            self._checkin(key, entry)
            LOCK_LOGGER.warning("Lock wait timed out key=%s timeout=%s", key, timeout)
            raise LockTimeout(f"Timed out waiting for lock {key}.", lock=key)
        try:
            yield
        finally:
            entry.lock.release()
            self._checkin(key, entry)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._entries)


class LockCoordinator:
    """Serializes mutating workflow operations per item and per request.

    Keys are always taken in the order item, request, extras so two
    operations touching the same pair can never deadlock.
    """

    def __init__(self, registry: KeyedLockRegistry | None = None):
        self.registry = registry or KeyedLockRegistry()

    @contextmanager
    def hold(
        self,
        item_id: int,
        request_id: int | None = None,
        timeout: float | None = None,
        extra: Iterable[str] = (),
    ) -> Iterator[None]:
        keys = [f"item:{item_id}"]
        if request_id is not None:
            keys.append(f"request:{request_id}")
        keys.extend(extra)

        deadline = None if timeout is None or timeout < 0 else time.monotonic() + timeout
        with ExitStack() as stack:
            for key in keys:
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
                stack.enter_context(self.registry.hold(key, remaining))
            yield

    def item_lock(self, item_id: int, timeout: float | None = None):
        return self.hold(item_id, timeout=timeout)

    @contextmanager
    def request_lock(self, request_id: int, timeout: float | None = None) -> Iterator[None]:
        with self.registry.hold(f"request:{request_id}", timeout):
            yield

    def with_item_lock(self, item_id: int, fn: Callable[[], T], timeout: float | None = None) -> T:
        with self.item_lock(item_id, timeout):
            return fn()

    def with_request_lock(self, request_id: int, fn: Callable[[], T], timeout: float | None = None) -> T:
        with self.request_lock(request_id, timeout):
            return fn()


COORDINATOR = LockCoordinator()
