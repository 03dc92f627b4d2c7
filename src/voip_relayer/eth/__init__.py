"""Ethereum side of the bridge: burning locked tokens."""

from voip_relayer.eth.bridge import BridgeContract, BurnReceipt

__all__ = ["BridgeContract", "BurnReceipt"]
