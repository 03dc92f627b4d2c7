"""Relayer exceptions.

Only TransportSetupFailure is allowed to escape a relay session; every other
error is contained inside the settlement task that raised it.
"""

from typing import Optional


class RelayerError(Exception):
    """Base class for relayer errors."""
    pass


class TransportSetupFailure(RelayerError):
    """Raised when the Ethereum log subscription cannot be opened."""
    pass


class LogReadFailure(RelayerError):
    """Raised when a pushed record is not a readable log."""
    pass


class AccountCreationFailure(RelayerError):
    """Raised when the destination token account could not be created."""
    pass


class IssueFailure(RelayerError):
    """Raised when the Solana migrate call fails or does not confirm."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class FinalizeFailure(RelayerError):
    """Raised when the Ethereum burn call fails or does not confirm."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash
