from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterable, Iterator

from services.errors import Busy

CUSTOMER = "customer"
VEHICLE = "vehicle"
BOOKING = "booking"

# Global acquisition order: customers, then vehicles, then bookings, each by id.
_KIND_RANK = {CUSTOMER: 0, VEHICLE: 1, BOOKING: 2}

EntityKey = tuple[str, int]


def _sort_key(key: EntityKey) -> tuple[int, int]:
    kind, identifier = key
    return _KIND_RANK[kind], int(identifier)


class EntityLockManager:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[EntityKey, list] = {}

    def _checkout(self, key: EntityKey) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: EntityKey) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                self._locks.pop(key, None)

    def tracked_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[EntityKey], timeout: float) -> Iterator[list[EntityKey]]:
        ordered = sorted({key for key in keys if key[1] is not None}, key=_sort_key)
        deadline = time.monotonic() + max(timeout, 0)
        acquired: list[tuple[EntityKey, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(deadline - time.monotonic(), 0)
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise Busy(f"Timed out waiting for {key[0]} {key[1]}.")
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)
