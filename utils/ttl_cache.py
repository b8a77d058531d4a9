"""Capacity-aware TTL cache used for safety verdicts and raw source payloads."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, TypeVar

V = TypeVar("V")


class TtlCache(Generic[V]):
    """Keyed cache with a fixed expiry and a hard entry cap.

    Expired entries are evicted when they are read. When the cap is reached the
    oldest insertion is dropped first.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = max(0.0, float(ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._rows: OrderedDict[str, tuple[float, V]] = OrderedDict()

    @staticmethod
    def _key(key: str) -> str:
        return str(key or "").strip()

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> V | None:
        k = self._key(key)
        row = self._rows.get(k)
        if row is None:
            return None
        stored_at, value = row
        if (self._clock() - stored_at) > self._ttl:
            self._rows.pop(k, None)
            return None
        return value

    def put(self, key: str, value: V) -> None:
        k = self._key(key)
        if not k:
            return
        self._rows.pop(k, None)
        self._rows[k] = (self._clock(), value)
        while len(self._rows) > self._max_entries:
            self._rows.popitem(last=False)

    def pop(self, key: str) -> V | None:
        row = self._rows.pop(self._key(key), None)
        return row[1] if row else None

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (ts, _) in self._rows.items() if (now - ts) > self._ttl]
        for k in stale:
            self._rows.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._rows.clear()
