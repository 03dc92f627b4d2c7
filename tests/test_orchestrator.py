"""Tests for two-phase settlement."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_event
from voip_relayer.exceptions import AccountCreationFailure, FinalizeFailure, IssueFailure
from voip_relayer.ledger.models import SettlementStatus
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.settlement.base import SettlementOutcome
from voip_relayer.settlement.orchestrator import SettlementOrchestrator, event_from_record


def _db_failing_on(db, *uses):
    """Session factory that raises "database is locked" on the given uses."""
    count = 0

    @asynccontextmanager
    async def _get_db():
        nonlocal count
        count += 1
        if count in uses:
            raise OperationalError("UPDATE settlements", {}, Exception("database is locked"))
        async with db() as session:
            yield session

    return _get_db


class TestSettle:
    """Tests for settle() without a ledger."""

    @pytest.mark.asyncio
    async def test_issue_then_finalize(self, migration, bridge):
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge)

        result = await orchestrator.settle(event)

        assert result.outcome == SettlementOutcome.ISSUED_AND_FINALIZED
        assert result.success
        assert result.issue_signature == "sol-signature"
        assert result.finalize_tx_hash == "0x" + "ef" * 32
        migration.migrate.assert_awaited_once_with(event.destination_address, event.amount)
        bridge.burn_tokens.assert_awaited_once_with(
            event.origin_address, str(event.destination_address)
        )

    @pytest.mark.asyncio
    async def test_issue_failure_skips_finalize(self, migration, bridge):
        migration.migrate = AsyncMock(side_effect=IssueFailure("blockhash not found"))
        orchestrator = SettlementOrchestrator(migration, bridge)

        result = await orchestrator.settle(make_event())

        assert result.outcome == SettlementOutcome.ISSUE_FAILED
        assert "blockhash not found" in result.error
        bridge.burn_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_finalize_failure_reports_issue_signature(self, migration, bridge):
        bridge.burn_tokens = AsyncMock(
            side_effect=FinalizeFailure("reverted", tx_hash="0x" + "01" * 32)
        )
        orchestrator = SettlementOrchestrator(migration, bridge)

        result = await orchestrator.settle(make_event())

        assert result.outcome == SettlementOutcome.FINALIZE_FAILED
        assert result.needs_reconciliation
        assert result.issue_signature == "sol-signature"
        assert result.finalize_tx_hash == "0x" + "01" * 32

    @pytest.mark.asyncio
    async def test_missing_token_account_is_created(self, migration, bridge):
        migration.account_exists = AsyncMock(return_value=False)
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge)

        await orchestrator.settle(event)

        expected = migration.derive_accounts(event.destination_address)
        migration.create_token_account.assert_awaited_once_with(
            event.destination_address, expected.destination_token_account
        )

    @pytest.mark.asyncio
    async def test_account_creation_failure_is_not_fatal(self, migration, bridge):
        migration.account_exists = AsyncMock(return_value=False)
        migration.create_token_account = AsyncMock(side_effect=AccountCreationFailure("no funds"))
        orchestrator = SettlementOrchestrator(migration, bridge)

        result = await orchestrator.settle(make_event())

        assert result.outcome == SettlementOutcome.ISSUED_AND_FINALIZED
        migration.migrate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_token_account_not_recreated(self, migration, bridge):
        orchestrator = SettlementOrchestrator(migration, bridge)

        await orchestrator.settle(make_event())

        migration.create_token_account.assert_not_awaited()


class TestSettleWithLedger:
    """Tests for settle() with the settlement ledger."""

    @pytest.mark.asyncio
    async def test_success_is_recorded(self, migration, bridge, db):
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)

        await orchestrator.settle(event)

        async with db() as session:
            record = await SettlementRepository(session).get_by_fingerprint(event.fingerprint)
        assert record.status == SettlementStatus.FINALIZED
        assert record.issue_signature == "sol-signature"
        assert record.finalize_tx_hash == "0x" + "ef" * 32
        assert record.finalize_attempts == 1
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_event_settled_once(self, migration, bridge, db):
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)

        first = await orchestrator.settle(event)
        second = await orchestrator.settle(event)

        assert first.outcome == SettlementOutcome.ISSUED_AND_FINALIZED
        assert second.outcome == SettlementOutcome.ALREADY_SETTLED
        assert second.issue_signature == "sol-signature"
        migration.migrate.assert_awaited_once()
        bridge.burn_tokens.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_issue_failure_is_recorded_and_not_retried(self, migration, bridge, db):
        migration.migrate = AsyncMock(side_effect=IssueFailure("simulation failed"))
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)

        await orchestrator.settle(event)
        again = await orchestrator.settle(event)

        async with db() as session:
            record = await SettlementRepository(session).get_by_fingerprint(event.fingerprint)
        assert record.status == SettlementStatus.ISSUE_FAILED
        assert "simulation failed" in record.error_message
        assert again.outcome == SettlementOutcome.ALREADY_SETTLED
        migration.migrate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_finalize_failure_is_recorded(self, migration, bridge, db):
        bridge.burn_tokens = AsyncMock(side_effect=FinalizeFailure("out of gas"))
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)

        await orchestrator.settle(event)

        async with db() as session:
            record = await SettlementRepository(session).get_by_fingerprint(event.fingerprint)
        assert record.status == SettlementStatus.FINALIZE_FAILED
        assert record.issue_signature == "sol-signature"
        assert record.completed_at is None

    @pytest.mark.asyncio
    async def test_ledger_error_after_issue_still_burns(self, migration, bridge, db):
        """Register and issue_pending succeed, recording the issue signature fails."""
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=_db_failing_on(db, 3))

        result = await orchestrator.settle(event)

        assert result.outcome == SettlementOutcome.ISSUED_AND_FINALIZED
        bridge.burn_tokens.assert_awaited_once()
        async with db() as session:
            record = await SettlementRepository(session).get_by_fingerprint(event.fingerprint)
        assert record.status == SettlementStatus.FINALIZED
        assert record.issue_signature == "sol-signature"

    @pytest.mark.asyncio
    async def test_ledger_error_after_issue_keeps_burn_resumable(self, migration, bridge, db):
        receipt = bridge.burn_tokens.return_value
        bridge.burn_tokens = AsyncMock(side_effect=[FinalizeFailure("rpc down"), receipt])
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=_db_failing_on(db, 3))

        first = await orchestrator.settle(event)
        resumed = await orchestrator.resume_pending()

        assert first.outcome == SettlementOutcome.FINALIZE_FAILED
        assert [r.outcome for r in resumed] == [SettlementOutcome.ISSUED_AND_FINALIZED]
        migration.migrate.assert_awaited_once()


class TestResumePending:
    """Tests for resuming phase 2 after a failed burn."""

    @pytest.mark.asyncio
    async def test_resume_burns_without_reissuing(self, migration, bridge, db):
        receipt = bridge.burn_tokens.return_value
        bridge.burn_tokens = AsyncMock(side_effect=[FinalizeFailure("rpc down"), receipt])
        event = make_event()
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)
        await orchestrator.settle(event)

        results = await orchestrator.resume_pending()

        assert [r.outcome for r in results] == [SettlementOutcome.ISSUED_AND_FINALIZED]
        assert results[0].issue_signature == "sol-signature"
        assert results[0].event.fingerprint == event.fingerprint
        migration.migrate.assert_awaited_once()
        assert bridge.burn_tokens.await_count == 2

        async with db() as session:
            record = await SettlementRepository(session).get_by_fingerprint(event.fingerprint)
        assert record.status == SettlementStatus.FINALIZED
        assert record.finalize_attempts == 2

    @pytest.mark.asyncio
    async def test_resume_stops_after_max_attempts(self, migration, bridge, db):
        bridge.burn_tokens = AsyncMock(side_effect=FinalizeFailure("reverted"))
        orchestrator = SettlementOrchestrator(migration, bridge, db=db, max_finalize_attempts=2)
        await orchestrator.settle(make_event())

        first = await orchestrator.resume_pending()
        second = await orchestrator.resume_pending()

        assert len(first) == 1
        assert second == []
        assert bridge.burn_tokens.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_records_do_not_block_newer_burns(self, migration, bridge, db):
        exhausted = make_event(log_index=1)
        fresh = make_event(log_index=2)
        async with db() as session:
            repo = SettlementRepository(session)
            await repo.register(exhausted)
            await repo.register(fresh)
            for _ in range(2):
                await repo.update_status(
                    exhausted.fingerprint, SettlementStatus.FINALIZE_PENDING, issue_signature="old"
                )
            await repo.update_status(exhausted.fingerprint, SettlementStatus.FINALIZE_FAILED)
            await repo.update_status(
                fresh.fingerprint, SettlementStatus.ISSUED, issue_signature="new"
            )
        orchestrator = SettlementOrchestrator(migration, bridge, db=db, max_finalize_attempts=2)

        results = await orchestrator.resume_pending(limit=1)

        assert [r.event.fingerprint for r in results] == [fresh.fingerprint]
        assert results[0].issue_signature == "new"

    @pytest.mark.asyncio
    async def test_resume_finalize_needs_issue_signature(self, migration, bridge, db):
        event = make_event()
        async with db() as session:
            repo = SettlementRepository(session)
            record, _ = await repo.register(event)
            await repo.update_status(event.fingerprint, SettlementStatus.FINALIZE_FAILED)
        orchestrator = SettlementOrchestrator(migration, bridge, db=db)

        assert await orchestrator.resume_finalize(record) is None
        assert await orchestrator.resume_pending() == []
        bridge.burn_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_without_ledger_is_noop(self, migration, bridge):
        orchestrator = SettlementOrchestrator(migration, bridge)

        assert await orchestrator.resume_pending() == []

    @pytest.mark.asyncio
    async def test_event_rebuilt_from_record(self, settlement_repo):
        event = make_event(amount=2**100)
        record, _ = await settlement_repo.register(event)

        rebuilt = event_from_record(record)

        assert rebuilt == event
        assert rebuilt.fingerprint == event.fingerprint
