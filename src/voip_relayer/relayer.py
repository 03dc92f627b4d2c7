"""One relay session: subscribe, replay missed logs, settle until the stream ends."""

import logging
from typing import Callable, Optional

from voip_relayer.handles import ChainHandles
from voip_relayer.ledger.cursor import CursorTracker
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.settlement.fanout import DEFAULT_MAX_CONCURRENCY, FanOutController, FanOutStats
from voip_relayer.settlement.orchestrator import SessionFactory, SettlementOrchestrator

logger = logging.getLogger(__name__)

CURSOR_CHAIN = "ETH"


class Relayer:
    """Runs relay sessions against freshly built chain handles.

    Without a ledger (`db=None`) a session only sees logs emitted after it
    subscribed. With a ledger the session resumes unfinished burns, replays
    logs from the stored cursor and skips events it has already recorded.
    """

    def __init__(
        self,
        handles_factory: Callable[[], ChainHandles],
        db: Optional[SessionFactory] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_finalize_attempts: int = 5,
    ):
        self.handles_factory = handles_factory
        self.db = db
        self.max_concurrency = max_concurrency
        self.max_finalize_attempts = max_finalize_attempts

    async def _load_start_block(self, handles: ChainHandles) -> Optional[int]:
        """First block to replay, or None to follow the live stream only."""
        contract = handles.subscription.contract_address
        async with self.db() as session:
            repo = SettlementRepository(session)
            cursor = await repo.get_cursor(CURSOR_CHAIN, contract)
            if cursor is None:
                # First run: start tracking from the current head
                head = await handles.subscription.head_block()
                await repo.set_cursor(CURSOR_CHAIN, contract, head)
                logger.info(f"Initialized subscription cursor at block {head}")
                return None
        return cursor + 1

    def _cursor_hook(self, tracker: CursorTracker, contract: str):
        persisted = tracker.safe_block

        async def on_complete(block_number: Optional[int]) -> None:
            nonlocal persisted
            tracker.completed(block_number)
            safe = tracker.safe_block
            if safe is None or (persisted is not None and safe <= persisted):
                return
            async with self.db() as session:
                persisted = await SettlementRepository(session).set_cursor(
                    CURSOR_CHAIN, contract, safe
                )

        return on_complete

    async def run_session(self) -> FanOutStats:
        """Run until the log stream ends.

        Raises:
            TransportSetupFailure: If the subscription cannot be opened.
        """
        handles = self.handles_factory()
        try:
            orchestrator = SettlementOrchestrator(
                handles.migration,
                handles.bridge,
                db=self.db,
                max_finalize_attempts=self.max_finalize_attempts,
            )

            async with handles.subscription as subscription:
                on_dispatch = None
                on_complete = None
                from_block = None

                if self.db is not None:
                    resumed = await orchestrator.resume_pending()
                    if resumed:
                        logger.info(f"Resumed {len(resumed)} pending burns")

                    from_block = await self._load_start_block(handles)
                    tracker = CursorTracker(
                        start=from_block - 1 if from_block is not None else None
                    )
                    on_dispatch = tracker.dispatched
                    on_complete = self._cursor_hook(tracker, subscription.contract_address)

                controller = FanOutController(
                    orchestrator.settle,
                    max_concurrency=self.max_concurrency,
                    on_dispatch=on_dispatch,
                    on_complete=on_complete,
                )
                logger.info("Relayer is listening for TokensLocked events")
                stats = await controller.run(subscription.stream(from_block))
        finally:
            await handles.close()

        logger.info(
            f"Log stream ended after {stats.received} logs "
            f"({dict(stats.outcomes)}, unreadable: {stats.unreadable})"
        )
        return stats
