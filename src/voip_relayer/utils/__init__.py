"""Utility modules for the relayer."""

from voip_relayer.utils.locks import LockTimeoutError, account_lock, get_account_lock

__all__ = ["LockTimeoutError", "account_lock", "get_account_lock"]
