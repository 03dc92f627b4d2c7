"""Bounded-concurrency fan-out of logs to settlement tasks."""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable, Optional

from voip_relayer.events.decoder import decode_lock_event, read_position
from voip_relayer.exceptions import LogReadFailure
from voip_relayer.settlement.base import SettlementOutcome, SettlementResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 20


@dataclass
class FanOutStats:
    """Counts of what one run of the controller handled."""

    received: int = 0
    unreadable: int = 0
    crashed: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def record(self, outcome: SettlementOutcome) -> None:
        self.outcomes[outcome] += 1


def _block_of(record: Any) -> Optional[int]:
    try:
        position = read_position(record)
    except Exception:
        return None
    return position.block_number if position else None


class FanOutController:
    """Runs one settlement task per log, at most `max_concurrency` at a time.

    When at capacity, reading the next log waits for a free slot. A failure
    in one task never affects its siblings or the controller.
    """

    def __init__(
        self,
        settle: Callable[[Any], Awaitable[SettlementResult]],
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        on_dispatch: Optional[Callable[[Optional[int]], None]] = None,
        on_complete: Optional[Callable[[Optional[int]], Awaitable[None]]] = None,
    ):
        """Initialize the controller.

        Args:
            settle: Coroutine settling one usable LockEvent
            max_concurrency: Maximum settlement tasks in flight
            on_dispatch: Called with the log's block number when a task starts
            on_complete: Awaited with the log's block number when a task ends
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.settle = settle
        self.max_concurrency = max_concurrency
        self.on_dispatch = on_dispatch
        self.on_complete = on_complete

    async def process(self, record: Any) -> Optional[SettlementResult]:
        """Decode one log and settle it if usable. Returns None if unreadable."""
        try:
            decoded = decode_lock_event(record)
        except LogReadFailure as e:
            logger.error(f"Failed to read log: {e}")
            return None

        event = decoded.event
        if event is None:
            logger.error(
                "Failed to decode event: "
                + "; ".join(str(failure) for failure in decoded.failures)
            )
            return SettlementResult(
                outcome=SettlementOutcome.DISCARDED,
                decode_failures=decoded.failures,
            )

        return await self.settle(event)

    async def _run_task(self, record: Any, stats: FanOutStats) -> None:
        block_number = _block_of(record)
        try:
            result = await self.process(record)
            if result is None:
                stats.unreadable += 1
            else:
                stats.record(result.outcome)
        except Exception as e:
            stats.crashed += 1
            logger.exception(f"Settlement task crashed: {e}")
        finally:
            if self.on_complete is not None:
                try:
                    await self.on_complete(block_number)
                except Exception as e:
                    logger.error(f"Completion hook failed: {e}")

    async def run(self, source: AsyncIterable[Any]) -> FanOutStats:
        """Consume `source` until it ends, then wait for in-flight tasks."""
        stats = FanOutStats()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks: set[asyncio.Task] = set()

        def _done(task: asyncio.Task) -> None:
            tasks.discard(task)
            semaphore.release()

        try:
            async for record in source:
                await semaphore.acquire()
                stats.received += 1
                if self.on_dispatch is not None:
                    self.on_dispatch(_block_of(record))
                task = asyncio.create_task(self._run_task(record, stats))
                tasks.add(task)
                task.add_done_callback(_done)
        finally:
            # Tasks run to completion even when the source fails
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        return stats
