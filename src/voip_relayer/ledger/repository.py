"""Repository for settlement ledger operations."""

from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from voip_relayer.events.decoder import LockEvent
from voip_relayer.ledger.models import Settlement, SettlementStatus, SubscriptionCursor

TERMINAL_STATUSES = (SettlementStatus.FINALIZED, SettlementStatus.ISSUE_FAILED)


class SettlementRepository:
    """Repository for settlement records and the subscription cursor."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Settlement operations
    async def get_by_fingerprint(self, fingerprint: str) -> Optional[Settlement]:
        """Get the settlement recorded for an event fingerprint."""
        stmt = select(Settlement).where(Settlement.fingerprint == fingerprint)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def register(self, event: LockEvent) -> tuple[Settlement, bool]:
        """Record a new event, or return the existing record.

        Returns:
            (settlement, created) where created is False if the fingerprint
            was already known.
        """
        fingerprint = event.fingerprint
        existing = await self.get_by_fingerprint(fingerprint)
        if existing is not None:
            return existing, False

        settlement = Settlement(
            fingerprint=fingerprint,
            source_tx_hash=event.source.tx_hash if event.source else None,
            source_log_index=event.source.log_index if event.source else None,
            source_block_number=event.source.block_number if event.source else None,
            origin_address=event.origin_address,
            destination_address=str(event.destination_address),
            amount=str(event.amount),
            status=SettlementStatus.PENDING,
        )
        self.session.add(settlement)
        try:
            await self.session.flush()
        except IntegrityError:
            # Registered concurrently by another task
            await self.session.rollback()
            existing = await self.get_by_fingerprint(fingerprint)
            return existing, False
        return settlement, True

    async def update_status(
        self,
        fingerprint: str,
        status: SettlementStatus,
        issue_signature: Optional[str] = None,
        finalize_tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Settlement:
        """Move a settlement to a new state. Raises ValueError if unknown."""
        settlement = await self.get_by_fingerprint(fingerprint)
        if settlement is None:
            raise ValueError(f"No settlement recorded for {fingerprint}")

        settlement.status = status
        if issue_signature is not None:
            settlement.issue_signature = issue_signature
        if finalize_tx_hash is not None:
            settlement.finalize_tx_hash = finalize_tx_hash
        if status == SettlementStatus.FINALIZE_PENDING:
            settlement.finalize_attempts += 1
        settlement.error_message = error_message
        if status in TERMINAL_STATUSES:
            settlement.completed_at = datetime.now(timezone.utc)

        await self.session.flush()
        return settlement

    async def get_by_status(
        self,
        statuses: Sequence[SettlementStatus],
        limit: int = 100,
        max_finalize_attempts: Optional[int] = None,
    ) -> list[Settlement]:
        """Get settlements in any of the given states, oldest first.

        With `max_finalize_attempts`, records that already used that many
        burn attempts are left out.
        """
        stmt = select(Settlement).where(Settlement.status.in_([s.value for s in statuses]))
        if max_finalize_attempts is not None:
            stmt = stmt.where(Settlement.finalize_attempts < max_finalize_attempts)
        stmt = stmt.order_by(Settlement.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Cursor operations
    async def get_cursor(self, chain: str, contract_address: str) -> Optional[int]:
        """Get the last fully registered block, or None if never set."""
        stmt = select(SubscriptionCursor).where(
            SubscriptionCursor.chain == chain.upper(),
            SubscriptionCursor.contract_address == contract_address.lower(),
        )
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()
        return cursor.last_block_number if cursor else None

    async def set_cursor(self, chain: str, contract_address: str, block_number: int) -> int:
        """Advance the cursor. Never moves it backwards; returns the stored value."""
        stmt = select(SubscriptionCursor).where(
            SubscriptionCursor.chain == chain.upper(),
            SubscriptionCursor.contract_address == contract_address.lower(),
        )
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()

        if cursor is None:
            cursor = SubscriptionCursor(
                chain=chain.upper(),
                contract_address=contract_address.lower(),
                last_block_number=block_number,
            )
            self.session.add(cursor)
        elif block_number > cursor.last_block_number:
            cursor.last_block_number = block_number

        await self.session.flush()
        return cursor.last_block_number
