"""Bounded, recency-ordered set of monitored accounts."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Iterator

LOGGER = logging.getLogger(__name__)


class MonitoredAccountSet:
    """Insertion-ordered account set with high/low water compaction.

    Re-inserting a known account refreshes its recency by moving it to
    the newest end. ``compact`` keeps only the ``low_water`` most recent
    entries once the size exceeds ``high_water``.
    """

    def __init__(self, high_water: int = 1000, low_water: int = 500) -> None:
        if not 0 < low_water <= high_water:
            raise ValueError("need 0 < low_water <= high_water")
        self._high_water = high_water
        self._low_water = low_water
        self._entries: OrderedDict[str, None] = OrderedDict()
        # Single-writer on the event loop today; the lock keeps it safe under threads.
        self._lock = threading.Lock()

    @property
    def high_water(self) -> int:
        return self._high_water

    @property
    def low_water(self) -> int:
        return self._low_water

    def add(self, account: str, refresh: bool = True) -> bool:
        """Inserts an account. Returns True if it was not tracked before."""
        with self._lock:
            if account in self._entries:
                if refresh:
                    self._entries.move_to_end(account)
                return False
            self._entries[account] = None
            return True

    def discard(self, account: str) -> None:
        with self._lock:
            self._entries.pop(account, None)

    def compact(self) -> list[str]:
        """Drops the oldest entries down to low_water. Returns what was evicted."""
        with self._lock:
            if len(self._entries) <= self._high_water:
                return []
            evicted: list[str] = []
            while len(self._entries) > self._low_water:
                account, _ = self._entries.popitem(last=False)
                evicted.append(account)
        LOGGER.info("evicted %d monitored accounts, %d remain", len(evicted), self._low_water)
        return evicted

    def snapshot(self) -> list[str]:
        """Oldest-first copy, safe to iterate while the set keeps changing."""
        with self._lock:
            return list(self._entries)

    def __contains__(self, account: object) -> bool:
        return account in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())
