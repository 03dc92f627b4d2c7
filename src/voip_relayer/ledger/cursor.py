"""In-memory tracking of the safe subscription cursor.

Settlements finish out of order, so the cursor may only advance to the
block just below the oldest log still in flight. Even when nothing is in
flight the newest block seen may still have undelivered logs, so the cursor
stays one block behind it and the fingerprint dedup absorbs the overlap.
"""

from collections import Counter
from typing import Optional


class CursorTracker:
    """Highest block whose logs have all been handled."""

    def __init__(self, start: Optional[int] = None):
        self._in_flight: Counter[int] = Counter()
        self._start = start
        self._highest_seen: Optional[int] = None

    def dispatched(self, block_number: Optional[int]) -> None:
        if block_number is None:
            return
        self._in_flight[block_number] += 1
        if self._highest_seen is None or block_number > self._highest_seen:
            self._highest_seen = block_number

    def completed(self, block_number: Optional[int]) -> None:
        if block_number is None or block_number not in self._in_flight:
            return
        self._in_flight[block_number] -= 1
        if self._in_flight[block_number] <= 0:
            del self._in_flight[block_number]

    @property
    def safe_block(self) -> Optional[int]:
        if self._in_flight:
            safe = min(self._in_flight) - 1
        elif self._highest_seen is not None:
            safe = self._highest_seen - 1
        else:
            return self._start
        if self._start is not None and safe < self._start:
            return self._start
        return safe
