"""Solana side of the bridge.

Account derivation is pure; MigrationProgram submits the token-account
creation and migrate transactions.
"""

from voip_relayer.sol.accounts import (
    DerivedAccounts,
    derive_migration_address,
    derive_state_address,
    derive_token_account,
)
from voip_relayer.sol.migration import MigrationProgram, build_create_token_account_ix, build_migrate_ix

__all__ = [
    "DerivedAccounts",
    "MigrationProgram",
    "build_create_token_account_ix",
    "build_migrate_ix",
    "derive_migration_address",
    "derive_state_address",
    "derive_token_account",
]
