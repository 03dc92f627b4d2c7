"""Pytest configuration and fixtures."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"

from voip_relayer.chains import TOKENS_LOCKED_TOPIC
from voip_relayer.eth.bridge import BurnReceipt
from voip_relayer.events.decoder import LockEvent, LogPosition
from voip_relayer.ledger.models import Base
from voip_relayer.ledger.repository import SettlementRepository
from voip_relayer.sol.accounts import DerivedAccounts
from voip_relayer.utils.locks import clear_account_locks

ORIGIN = "0x1111111111111111111111111111111111111111"
BRIDGE = "0x2222222222222222222222222222222222222222"
PROGRAM_ID = Keypair().pubkey()
MINT = Keypair().pubkey()
ADMIN = Keypair()


def make_log(
    amount: int = 3,
    origin: str = ORIGIN,
    destination: str = "",
    tx_hash: str = "0x" + "ab" * 32,
    log_index: int = 0,
    block_number: int = 100,
) -> dict:
    """Build a raw TokensLocked log as the websocket delivers it."""
    return {
        "address": BRIDGE,
        "topics": [
            HexBytes(TOKENS_LOCKED_TOPIC),
            HexBytes(abi_encode(["uint256"], [amount])),
            HexBytes(abi_encode(["address"], [origin])),
        ],
        "data": HexBytes(abi_encode(["string"], [destination or str(Keypair().pubkey())])),
        "transactionHash": HexBytes(tx_hash),
        "logIndex": log_index,
        "blockNumber": block_number,
    }


def make_event(
    amount: int = 3_000_000_000,
    destination: Pubkey = None,
    tx_hash: str = "0x" + "cd" * 32,
    log_index: int = 0,
    block_number: int = 100,
) -> LockEvent:
    """Build a decoded LockEvent."""
    return LockEvent(
        amount=amount,
        origin_address=ORIGIN,
        destination_address=destination or Keypair().pubkey(),
        source=LogPosition(tx_hash=tx_hash, log_index=log_index, block_number=block_number),
    )


@pytest.fixture(autouse=True)
def reset_locks():
    """Account locks are bound to the loop that created them."""
    clear_account_locks()
    yield
    clear_account_locks()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def settlement_repo(db_session: AsyncSession) -> SettlementRepository:
    """Create settlement repository for testing."""
    return SettlementRepository(db_session)


@pytest.fixture
def db(db_engine):
    """Session factory with the same commit/rollback behavior as get_db()."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    @asynccontextmanager
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _get_db


@pytest.fixture
def migration():
    """MigrationProgram double whose calls all succeed."""
    program = MagicMock()
    program.derive_accounts.side_effect = lambda destination: DerivedAccounts.for_destination(
        destination, ADMIN.pubkey(), MINT, PROGRAM_ID
    )
    program.account_exists = AsyncMock(return_value=True)
    program.create_token_account = AsyncMock(return_value="ata-signature")
    program.migrate = AsyncMock(return_value="sol-signature")
    program.close = AsyncMock()
    return program


@pytest.fixture
def bridge():
    """BridgeContract double whose burns all succeed."""
    contract = MagicMock()
    contract.burn_tokens = AsyncMock(
        return_value=BurnReceipt(tx_hash="0x" + "ef" * 32, block_number=101, gas_used=50_000)
    )
    return contract
