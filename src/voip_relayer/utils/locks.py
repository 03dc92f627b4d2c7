"""Per-account locks for transaction submission.

Every burn is signed by the same Ethereum admin account. Nonce allocation
and broadcast must be serialized per account so concurrent settlements do
not reuse a nonce.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: lowercase address -> asyncio.Lock
_account_locks: dict[str, asyncio.Lock] = {}


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


def get_account_lock(address: str) -> asyncio.Lock:
    """Get or create the lock for an account.

    Args:
        address: Account address (case-insensitive)

    Returns:
        asyncio.Lock for the account
    """
    key = address.lower()
    if key not in _account_locks:
        _account_locks[key] = asyncio.Lock()
    return _account_locks[key]


@asynccontextmanager
async def account_lock(
    address: str,
    timeout: Optional[float] = None,
    operation: str = "submit",
):
    """Hold exclusive access to an account's nonce sequence.

    Args:
        address: Account address
        timeout: Maximum time to wait for the lock (None = wait forever)
        operation: Description for logging

    Example:
        async with account_lock(admin_address, operation="burnTokens"):
            nonce = await w3.eth.get_transaction_count(admin_address, "pending")
            ...
    """
    lock = get_account_lock(address)

    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        logger.warning(f"Lock timeout for account {address}: {operation}")
        raise LockTimeoutError(
            f"Could not acquire lock for account {address} within {timeout}s"
        )

    logger.debug(f"Lock acquired for account {address}: {operation}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released for account {address}: {operation}")


def clear_account_locks() -> None:
    """Clear all account locks (useful for testing)."""
    _account_locks.clear()
