"""End-to-end relay sessions against an in-memory fake chain."""

from unittest.mock import AsyncMock

import pytest

from conftest import BRIDGE, make_log
from voip_relayer.exceptions import FinalizeFailure
from voip_relayer.handles import ChainHandles
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.relayer import CURSOR_CHAIN, Relayer
from voip_relayer.settlement.base import SettlementOutcome
from voip_relayer.supervisor import RestartPolicy, Supervisor


class FakeChain:
    """Ethereum log history shared by every subscription."""

    def __init__(self):
        self.logs = []

    def emit(self, log):
        """A log emitted while no subscription is open."""
        self.logs.append(log)

    @property
    def head(self) -> int:
        return max((log["blockNumber"] for log in self.logs), default=0)


class FakeSubscription:
    """Replays history from a block, then delivers this session's live logs."""

    def __init__(self, chain: FakeChain, live: list):
        self.chain = chain
        self.live = live
        self.contract_address = BRIDGE
        self.backfilled = []

    async def __aenter__(self):
        self._head = self.chain.head
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def head_block(self) -> int:
        return self._head

    async def stream(self, from_block=None):
        if from_block is not None:
            for log in list(self.chain.logs):
                if from_block <= log["blockNumber"] <= self._head:
                    self.backfilled.append(log)
                    yield log
        for log in self.live:
            self.chain.logs.append(log)
            yield log


def _factory(chain, batches, migration, bridge):
    bridge.w3.provider.disconnect = AsyncMock()
    subscriptions = []

    def build():
        subscription = FakeSubscription(chain, batches.pop(0))
        subscriptions.append(subscription)
        return ChainHandles(subscription=subscription, bridge=bridge, migration=migration)

    return build, subscriptions


class TestRelaySession:
    """Tests for Relayer.run_session."""

    @pytest.mark.asyncio
    async def test_session_settles_live_logs(self, migration, bridge):
        chain = FakeChain()
        logs = [make_log(block_number=10, log_index=i) for i in range(3)]
        build, _ = _factory(chain, [logs], migration, bridge)

        stats = await Relayer(build).run_session()

        assert stats.received == 3
        assert stats.outcomes[SettlementOutcome.ISSUED_AND_FINALIZED] == 3
        assert bridge.burn_tokens.await_count == 3
        migration.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logs_between_sessions_lost_without_ledger(self, migration, bridge):
        chain = FakeChain()
        first, missed, second = (
            make_log(block_number=10),
            make_log(block_number=11),
            make_log(block_number=12),
        )
        build, _ = _factory(chain, [[first], [second]], migration, bridge)
        relayer = Relayer(build)

        await relayer.run_session()
        chain.emit(missed)
        await relayer.run_session()

        assert migration.migrate.await_count == 2

    @pytest.mark.asyncio
    async def test_ledger_replays_logs_between_sessions(self, migration, bridge, db):
        chain = FakeChain()
        first, missed, second = (
            make_log(block_number=10),
            make_log(block_number=11),
            make_log(block_number=12),
        )
        build, subscriptions = _factory(chain, [[first], [second]], migration, bridge)
        relayer = Relayer(build, db=db, max_concurrency=1)

        await relayer.run_session()
        chain.emit(missed)
        await relayer.run_session()

        assert migration.migrate.await_count == 3
        assert subscriptions[1].backfilled == [first, missed]

        async with db() as session:
            cursor = await SettlementRepository(session).get_cursor(CURSOR_CHAIN, BRIDGE)
        assert cursor == 11

    @pytest.mark.asyncio
    async def test_rest_of_block_replayed_after_drop(self, migration, bridge, db):
        """The stream ends after the first log of block 100; its sibling arrives later."""
        chain = FakeChain()
        first = make_log(block_number=100, log_index=0)
        sibling = make_log(block_number=100, log_index=1)
        build, subscriptions = _factory(chain, [[first], []], migration, bridge)
        relayer = Relayer(build, db=db, max_concurrency=1)

        await relayer.run_session()
        async with db() as session:
            cursor = await SettlementRepository(session).get_cursor(CURSOR_CHAIN, BRIDGE)
        chain.emit(sibling)
        stats = await relayer.run_session()

        assert cursor == 99
        assert subscriptions[1].backfilled == [first, sibling]
        assert stats.outcomes[SettlementOutcome.ALREADY_SETTLED] == 1
        assert stats.outcomes[SettlementOutcome.ISSUED_AND_FINALIZED] == 1
        assert migration.migrate.await_count == 2

    @pytest.mark.asyncio
    async def test_ledger_skips_redelivered_log(self, migration, bridge, db):
        chain = FakeChain()
        log = make_log(block_number=10)
        build, _ = _factory(chain, [[log], [log]], migration, bridge)
        relayer = Relayer(build, db=db, max_concurrency=1)

        await relayer.run_session()
        stats = await relayer.run_session()

        assert stats.outcomes[SettlementOutcome.ALREADY_SETTLED] == 2
        migration.migrate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_resumes_failed_burns(self, migration, bridge, db):
        receipt = bridge.burn_tokens.return_value
        bridge.burn_tokens = AsyncMock(side_effect=[FinalizeFailure("rpc down"), receipt])
        chain = FakeChain()
        build, _ = _factory(chain, [[make_log(block_number=10)], []], migration, bridge)
        relayer = Relayer(build, db=db, max_concurrency=1)

        first = await relayer.run_session()
        await relayer.run_session()

        assert first.outcomes[SettlementOutcome.FINALIZE_FAILED] == 1
        assert bridge.burn_tokens.await_count == 2
        migration.migrate.assert_awaited_once()


class TestSupervisedRelayer:
    """The supervisor keeps restarting sessions as streams end."""

    @pytest.mark.asyncio
    async def test_each_session_gets_fresh_handles(self, migration, bridge):
        chain = FakeChain()
        batches = [[make_log(block_number=b)] for b in (10, 11, 12)]
        build, subscriptions = _factory(chain, batches, migration, bridge)
        relayer = Relayer(build)
        sleeps = []

        async def sleep(delay):
            sleeps.append(delay)

        async def run_session():
            stats = await relayer.run_session()
            if not batches:
                supervisor.stop()
            return stats

        supervisor = Supervisor(run_session, RestartPolicy(jitter=0.0), sleep=sleep)
        await supervisor.run_forever()

        assert supervisor.sessions == 3
        assert len({id(s) for s in subscriptions}) == 3
        assert migration.migrate.await_count == 3
        # Every session handled a log, so restarts are immediate
        assert sleeps == []
