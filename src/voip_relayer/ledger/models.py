"""SQLAlchemy models for the settlement ledger."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SettlementStatus(str, Enum):
    """Persisted state of a settlement."""

    PENDING = "pending"                    # Registered, nothing submitted yet
    ISSUE_PENDING = "issue_pending"        # Migrate being submitted on Solana
    ISSUED = "issued"                      # Migrate confirmed
    FINALIZE_PENDING = "finalize_pending"  # Burn being submitted on Ethereum
    FINALIZED = "finalized"                # Burn confirmed
    ISSUE_FAILED = "issue_failed"          # Terminal, ETH stays locked
    FINALIZE_FAILED = "finalize_failed"    # Issued but not burned, retried by resume


# Records whose burn may still be (re)attempted
RESUMABLE_STATUSES = (
    SettlementStatus.ISSUED,
    SettlementStatus.FINALIZE_PENDING,
    SettlementStatus.FINALIZE_FAILED,
)

# Records whose Solana migrate may or may not have happened
IN_DOUBT_STATUSES = (
    SettlementStatus.PENDING,
    SettlementStatus.ISSUE_PENDING,
)


class Settlement(Base):
    """One TokensLocked event and how far its settlement got.

    Keyed by the event fingerprint so a log seen twice (backfill overlap,
    restart) is never issued twice.
    """

    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    source_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    source_log_index: Mapped[Optional[int]] = mapped_column(nullable=True)
    source_block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    origin_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    destination_address: Mapped[str] = mapped_column(String(44), nullable=False, index=True)
    # u128 does not fit any SQL integer type
    amount: Mapped[str] = mapped_column(String(40), nullable=False)

    status: Mapped[SettlementStatus] = mapped_column(
        String(20), default=SettlementStatus.PENDING, nullable=False, index=True
    )
    issue_signature: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    finalize_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    finalize_attempts: Mapped[int] = mapped_column(default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SubscriptionCursor(Base):
    """Last Ethereum block whose TokensLocked logs are all registered."""

    __tablename__ = "subscription_cursors"
    __table_args__ = (Index("ix_cursor_chain_contract", "chain", "contract_address", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    last_block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
