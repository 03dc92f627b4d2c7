"""Settlement outcomes.

Settlement flow:
1. Decode the TokensLocked log (discard if unusable)
2. Ensure the destination token account exists on Solana (best-effort)
3. Issue: migrate on Solana and wait for confirmation
4. Finalize: burnTokens on Ethereum and wait for confirmation

Step 4 runs only after step 3 confirmed. Neither step is retried in place.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from voip_relayer.events.decoder import DecodeFailure, LockEvent


class SettlementOutcome(str, Enum):
    """Terminal outcome of one settlement."""

    ISSUED_AND_FINALIZED = "issued_and_finalized"
    ISSUE_FAILED = "issue_failed"            # Nothing happened on Solana, ETH stays locked
    FINALIZE_FAILED = "finalize_failed"      # Issued on Solana, ETH still locked
    DISCARDED = "discarded"                  # Log could not be decoded
    ALREADY_SETTLED = "already_settled"      # Fingerprint found in the ledger


@dataclass
class SettlementResult:
    """Result of settling one log."""

    outcome: SettlementOutcome
    event: Optional[LockEvent] = None
    issue_signature: Optional[str] = None
    finalize_tx_hash: Optional[str] = None
    error: Optional[str] = None
    decode_failures: list[DecodeFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == SettlementOutcome.ISSUED_AND_FINALIZED

    @property
    def needs_reconciliation(self) -> bool:
        """Issued on Solana but never burned on Ethereum."""
        return self.outcome == SettlementOutcome.FINALIZE_FAILED
