"""Two-phase settlement of a lock event.

Phase 1 issues the tokens on Solana (migrate). Phase 2 burns the locked
tokens on Ethereum (burnTokens) and is entered only with a confirmed
phase 1 signature. Neither phase is retried in place.

When a ledger session factory is given, every transition is persisted and
keyed by the event fingerprint. That makes the pipeline idempotent across
restarts and lets phase 2 be resumed on its own later.
"""

import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional

from solders.pubkey import Pubkey
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from voip_relayer.eth.bridge import BridgeContract
from voip_relayer.events.decoder import LockEvent, LogPosition
from voip_relayer.exceptions import AccountCreationFailure, FinalizeFailure, IssueFailure
from voip_relayer.ledger.models import RESUMABLE_STATUSES, Settlement, SettlementStatus
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.settlement.base import SettlementOutcome, SettlementResult
from voip_relayer.sol.migration import MigrationProgram

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def event_from_record(record: Settlement) -> LockEvent:
    """Rebuild the LockEvent a settlement record was created from."""
    source = None
    if record.source_tx_hash is not None:
        source = LogPosition(
            tx_hash=record.source_tx_hash,
            log_index=record.source_log_index or 0,
            block_number=record.source_block_number,
        )
    return LockEvent(
        amount=int(record.amount),
        origin_address=record.origin_address,
        destination_address=Pubkey.from_string(record.destination_address),
        source=source,
    )


class SettlementOrchestrator:
    """Drives issue-then-finalize for each event.

    `migration` and `bridge` are shared by all concurrent settlements and
    are never mutated here.
    """

    def __init__(
        self,
        migration: MigrationProgram,
        bridge: BridgeContract,
        db: Optional[SessionFactory] = None,
        max_finalize_attempts: int = 5,
    ):
        self.migration = migration
        self.bridge = bridge
        self.db = db
        self.max_finalize_attempts = max_finalize_attempts

    # ------------------------------------------------------------------
    # Ledger helpers
    # ------------------------------------------------------------------

    async def _register(self, event: LockEvent) -> Optional[Settlement]:
        """Record the event; returns the existing record if already known."""
        async with self.db() as session:
            settlement, created = await SettlementRepository(session).register(event)
        return None if created else settlement

    async def _transition(self, event: LockEvent, status: SettlementStatus, **fields) -> None:
        if self.db is None:
            return
        async with self.db() as session:
            await SettlementRepository(session).update_status(event.fingerprint, status, **fields)

    async def _record(self, event: LockEvent, status: SettlementStatus, **fields) -> None:
        """Persist a transition once the Solana call has been made.

        A ledger error here must not stop the settlement, so it is logged with
        everything needed to reconcile by hand.
        """
        try:
            await self._transition(event, status, **fields)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record {status.value} for {event.fingerprint[:16]}: "
                f"ETH address {event.origin_address}, SOL address {event.destination_address}, "
                f"amount {event.amount}, fields {fields}, error: {e}"
            )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _ensure_token_account(self, destination: Pubkey, token_account: Pubkey) -> None:
        if await self.migration.account_exists(token_account):
            return
        try:
            signature = await self.migration.create_token_account(destination, token_account)
            logger.info(
                f"Created associated token account {token_account} for {destination} "
                f"(tx: {signature})"
            )
        except AccountCreationFailure as e:
            # Best-effort: migrate is attempted regardless
            logger.warning(f"Failed to create associated token account: {e}")

    async def issue(self, event: LockEvent) -> str:
        """Phase 1: migrate on Solana. Returns the confirmed signature.

        Raises:
            IssueFailure: If migrate fails or does not confirm.
        """
        accounts = self.migration.derive_accounts(event.destination_address)
        await self._ensure_token_account(
            event.destination_address, accounts.destination_token_account
        )
        return await self.migration.migrate(event.destination_address, event.amount)

    async def finalize(self, event: LockEvent, issue_signature: str) -> SettlementResult:
        """Phase 2: burn on Ethereum, given a confirmed phase 1 signature."""
        await self._record(
            event, SettlementStatus.FINALIZE_PENDING, issue_signature=issue_signature
        )
        try:
            receipt = await self.bridge.burn_tokens(
                event.origin_address, str(event.destination_address)
            )
        except FinalizeFailure as e:
            logger.error(
                f"Failed to burn ETH VOIP tokens, manual reconciliation needed: "
                f"ETH address {event.origin_address}, SOL address {event.destination_address}, "
                f"amount {event.amount}, SOL tx {issue_signature}, ETH tx {e.tx_hash}, error: {e}"
            )
            await self._record(
                event,
                SettlementStatus.FINALIZE_FAILED,
                issue_signature=issue_signature,
                finalize_tx_hash=e.tx_hash,
                error_message=str(e),
            )
            return SettlementResult(
                outcome=SettlementOutcome.FINALIZE_FAILED,
                event=event,
                issue_signature=issue_signature,
                finalize_tx_hash=e.tx_hash,
                error=str(e),
            )

        await self._record(
            event, SettlementStatus.FINALIZED, finalize_tx_hash=receipt.tx_hash
        )
        logger.info(
            f"Processed new migration: ETH address {event.origin_address}, "
            f"SOL address {event.destination_address}, amount {event.amount}, "
            f"SOL tx {issue_signature}, ETH tx {receipt.tx_hash}"
        )
        return SettlementResult(
            outcome=SettlementOutcome.ISSUED_AND_FINALIZED,
            event=event,
            issue_signature=issue_signature,
            finalize_tx_hash=receipt.tx_hash,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def settle(self, event: LockEvent) -> SettlementResult:
        """Settle one usable event."""
        if self.db is not None:
            existing = await self._register(event)
            if existing is not None:
                logger.info(
                    f"Skipping already recorded migration {event.fingerprint[:16]} "
                    f"(status: {existing.status})"
                )
                return SettlementResult(
                    outcome=SettlementOutcome.ALREADY_SETTLED,
                    event=event,
                    issue_signature=existing.issue_signature,
                    finalize_tx_hash=existing.finalize_tx_hash,
                )

        logger.info(
            f"Processing new migration: {event.amount} from {event.origin_address} "
            f"to {event.destination_address}"
        )

        await self._transition(event, SettlementStatus.ISSUE_PENDING)
        try:
            signature = await self.issue(event)
        except IssueFailure as e:
            logger.error(
                f"Failed to migrate SOL VOIP tokens: ETH address {event.origin_address}, "
                f"SOL address {event.destination_address}, amount {event.amount}, error: {e}"
            )
            await self._record(event, SettlementStatus.ISSUE_FAILED, error_message=str(e))
            return SettlementResult(
                outcome=SettlementOutcome.ISSUE_FAILED,
                event=event,
                error=str(e),
            )

        logger.info(
            f"Successfully migrated SOL VOIP tokens: ETH address {event.origin_address}, "
            f"SOL address {event.destination_address}, tx {signature}"
        )
        await self._record(event, SettlementStatus.ISSUED, issue_signature=signature)

        return await self.finalize(event, signature)

    async def resume_pending(self, limit: int = 100) -> list[SettlementResult]:
        """Retry phase 2 for recorded settlements that were issued but never burned.

        Records past `max_finalize_attempts` are left for manual reconciliation.
        """
        if self.db is None:
            return []

        async with self.db() as session:
            records = await SettlementRepository(session).get_by_status(
                RESUMABLE_STATUSES,
                limit=limit,
                max_finalize_attempts=self.max_finalize_attempts,
            )

        results = []
        for record in records:
            result = await self.resume_finalize(record)
            if result is not None:
                results.append(result)
        return results

    async def resume_finalize(self, record: Settlement) -> Optional[SettlementResult]:
        """Run phase 2 alone for a recorded settlement.

        Returns None if the record has no issue signature or has used up its
        burn attempts.
        """
        if not record.issue_signature:
            return None
        if record.finalize_attempts >= self.max_finalize_attempts:
            logger.warning(
                f"Settlement {record.fingerprint[:16]} exhausted "
                f"{record.finalize_attempts} burn attempts, needs manual reconciliation"
            )
            return None

        logger.info(
            f"Resuming burn for {record.origin_address} -> {record.destination_address} "
            f"(SOL tx {record.issue_signature})"
        )
        return await self.finalize(event_from_record(record), record.issue_signature)
