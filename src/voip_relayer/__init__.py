"""VOIP Finance ETH -> SOL migration relayer."""

__version__ = "0.1.0"
