"""Settlement of lock events: issue on Solana, then burn on Ethereum."""

from voip_relayer.settlement.base import SettlementOutcome, SettlementResult
from voip_relayer.settlement.fanout import FanOutController, FanOutStats
from voip_relayer.settlement.orchestrator import SettlementOrchestrator

__all__ = [
    "FanOutController",
    "FanOutStats",
    "SettlementOrchestrator",
    "SettlementOutcome",
    "SettlementResult",
]
