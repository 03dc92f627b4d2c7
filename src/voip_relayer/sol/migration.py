"""Solana side of the migration: token account creation and the migrate call.

All RPC traffic goes through the non-blocking solana-py `AsyncClient`, so a
slow Solana node never stalls the event loop that is also reading the
Ethereum subscription.
"""

import logging
import struct
from typing import Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from voip_relayer.chains import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    CREATE_ATA_DATA,
    MIGRATE_AMOUNT_BITS,
    MIGRATE_DISCRIMINATOR,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from voip_relayer.exceptions import AccountCreationFailure, IssueFailure
from voip_relayer.sol.accounts import DerivedAccounts

logger = logging.getLogger(__name__)

MIGRATE_AMOUNT_MASK = (1 << MIGRATE_AMOUNT_BITS) - 1

def build_create_token_account_ix(
    payer: Pubkey, token_account: Pubkey, owner: Pubkey, mint: Pubkey
) -> Instruction:
    """Associated token program "Create" instruction, paid for by `payer`."""
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        CREATE_ATA_DATA,
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )

def build_migrate_ix(
    program_id: Pubkey,
    accounts: DerivedAccounts,
    admin: Pubkey,
    destination: Pubkey,
    mint: Pubkey,
    amount: int,
) -> Instruction:
    """Migration program "migrate" instruction.

    The amount is truncated to 64 bits, matching the program's u64 argument.
    """
    data = MIGRATE_DISCRIMINATOR + struct.pack("<Q", amount & MIGRATE_AMOUNT_MASK)
    return Instruction(
        program_id,
        data,
        [
            AccountMeta(accounts.migration, is_signer=False, is_writable=True),
            AccountMeta(accounts.state, is_signer=False, is_writable=False),
            AccountMeta(accounts.destination_token_account, is_signer=False, is_writable=True),
            AccountMeta(accounts.admin_token_account, is_signer=False, is_writable=True),
            AccountMeta(admin, is_signer=True, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


class MigrationProgram:
    """Handle on the Solana migration program, signing with the admin keypair.

    Shared read-only by every settlement task. The keypair is only used for
    signing, which does not mutate it.
    """

    def __init__(
        self,
        client: AsyncClient,
        admin: Keypair,
        program_id: Pubkey,
        mint: Pubkey,
        commitment: str = "confirmed",
    ):
        self.client = client
        self.admin = admin
        self.program_id = program_id
        self.mint = mint
        self.commitment = commitment

    @property
    def admin_pubkey(self) -> Pubkey:
        return self.admin.pubkey()

    def derive_accounts(self, destination: Pubkey) -> DerivedAccounts:
        return DerivedAccounts.for_destination(
            destination, self.admin_pubkey, self.mint, self.program_id
        )

    async def _send_and_confirm(self, instructions: Sequence[Instruction]) -> str:
        blockhash_resp = await self.client.get_latest_blockhash(self.commitment)
        tx = Transaction.new_signed_with_payer(
            list(instructions), self.admin_pubkey, [self.admin], blockhash_resp.value.blockhash
        )
        send_resp = await self.client.send_transaction(
            tx,
            opts=TxOpts(skip_confirmation=True, preflight_commitment=self.commitment),
        )
        signature = send_resp.value

        confirm_resp = await self.client.confirm_transaction(signature, self.commitment)
        statuses = confirm_resp.value
        status = statuses[0] if statuses else None
        if status is None:
            raise RuntimeError(f"Transaction {signature} was not confirmed")
        if status.err is not None:
            raise RuntimeError(f"Transaction {signature} failed: {status.err}")
        return str(signature)

    async def account_exists(self, address: Pubkey) -> bool:
        """Check whether an account exists on chain."""
        try:
            resp = await self.client.get_account_info(address)
        except Exception as e:
            # Lookup errors are treated as "absent"; creation is best-effort anyway
            logger.warning(f"Account lookup failed for {address}: {e}")
            return False
        return resp.value is not None

    async def create_token_account(
        self, owner: Pubkey, token_account: Optional[Pubkey] = None
    ) -> str:
        """Create the associated token account of `owner`, admin pays.

        Raises:
            AccountCreationFailure: If the transaction fails or does not confirm.
        """
        if token_account is None:
            token_account = self.derive_accounts(owner).destination_token_account
        ix = build_create_token_account_ix(self.admin_pubkey, token_account, owner, self.mint)
        try:
            return await self._send_and_confirm([ix])
        except Exception as e:
            raise AccountCreationFailure(
                f"Failed to create token account {token_account} for {owner}: {e}"
            ) from e

    async def migrate(self, destination: Pubkey, amount: int) -> str:
        """Submit the migrate instruction and wait for confirmation.

        Returns:
            Transaction signature

        Raises:
            IssueFailure: If submission fails or the transaction does not confirm.
        """
        accounts = self.derive_accounts(destination)
        ix = build_migrate_ix(
            self.program_id, accounts, self.admin_pubkey, destination, self.mint, amount
        )
        try:
            return await self._send_and_confirm([ix])
        except Exception as e:
            raise IssueFailure(f"Migrate to {destination} failed: {e}") from e

    async def close(self) -> None:
        """Close the RPC client."""
        await self.client.close()
