"""Program derived addresses used by the migration program.

Every address here is a pure function of its seeds and the owning program,
so nothing is stored; addresses are recomputed for each event.
"""

from dataclasses import dataclass

from solders.pubkey import Pubkey

from voip_relayer.chains import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    MIGRATION_SEED,
    STATE_SEED,
    TOKEN_PROGRAM_ID,
)


def derive_state_address(migration_program_id: Pubkey) -> Pubkey:
    """Global migration state account (seed "state")."""
    address, _ = Pubkey.find_program_address([STATE_SEED], migration_program_id)
    return address


def derive_migration_address(destination: Pubkey, migration_program_id: Pubkey) -> Pubkey:
    """Per-destination migration record (seeds "migration", destination)."""
    address, _ = Pubkey.find_program_address(
        [MIGRATION_SEED, bytes(destination)], migration_program_id
    )
    return address


def derive_token_account(
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    associated_token_program_id: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Associated token account of `owner` for `mint`."""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)],
        associated_token_program_id,
    )
    return address


@dataclass(frozen=True)
class DerivedAccounts:
    """All derived accounts a migrate instruction names."""

    state: Pubkey
    migration: Pubkey
    admin_token_account: Pubkey
    destination_token_account: Pubkey

    @classmethod
    def for_destination(
        cls,
        destination: Pubkey,
        admin: Pubkey,
        mint: Pubkey,
        migration_program_id: Pubkey,
    ) -> "DerivedAccounts":
        return cls(
            state=derive_state_address(migration_program_id),
            migration=derive_migration_address(destination, migration_program_id),
            admin_token_account=derive_token_account(admin, mint),
            destination_token_account=derive_token_account(destination, mint),
        )
