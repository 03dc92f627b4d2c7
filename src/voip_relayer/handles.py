"""Construction of the chain handles a relay session works with."""

import logging
from dataclasses import dataclass

import base58
from eth_account import Account
from eth_account.signers.local import LocalAccount
from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from web3 import AsyncHTTPProvider, AsyncWeb3

from voip_relayer.config import Settings
from voip_relayer.eth.bridge import BridgeContract
from voip_relayer.events.source import LogSubscription
from voip_relayer.sol.migration import MigrationProgram

logger = logging.getLogger(__name__)


@dataclass
class AdminIdentities:
    """Signing identities of the relayer on both chains."""

    eth: LocalAccount
    sol: Keypair


@dataclass
class ChainHandles:
    """Everything one relay session needs, fully configured."""

    subscription: LogSubscription
    bridge: BridgeContract
    migration: MigrationProgram

    async def close(self) -> None:
        """Release RPC connections."""
        await self.migration.close()
        try:
            await self.bridge.w3.provider.disconnect()
        except Exception as e:
            logger.debug(f"HTTP provider disconnect error: {e}")


def load_admin_identities(settings: Settings) -> AdminIdentities:
    """Parse both admin keys.

    Raises:
        ValueError: If a key cannot be parsed.
    """
    try:
        sol_admin = Keypair.from_bytes(base58.b58decode(settings.solana_admin_private_key))
    except Exception as e:
        raise ValueError(f"Failed to parse SOLANA_ADMIN_PRIVATE_KEY: {e}") from e

    try:
        eth_admin = Account.from_key(settings.ethereum_admin_private_key)
    except Exception as e:
        raise ValueError(f"Failed to parse ETHEREUM_ADMIN_PRIVATE_KEY: {e}") from e

    if (
        settings.ethereum_admin_address
        and eth_admin.address.lower() != settings.ethereum_admin_address.lower()
    ):
        logger.warning(
            f"ETHEREUM_ADMIN_ADDRESS {settings.ethereum_admin_address} does not match "
            f"the private key's address {eth_admin.address}; using the key's address"
        )

    return AdminIdentities(eth=eth_admin, sol=sol_admin)


def build_handles(settings: Settings, admins: AdminIdentities) -> ChainHandles:
    """Build fresh chain handles for one session.

    Raises:
        ValueError: If a configured address cannot be parsed.
    """
    try:
        mint = Pubkey.from_string(settings.sol_voip_token_mint)
    except Exception as e:
        raise ValueError(f"Failed to parse SOL_VOIP_TOKEN_MINT: {e}") from e
    try:
        program_id = Pubkey.from_string(settings.sol_migration_program_id)
    except Exception as e:
        raise ValueError(f"Failed to parse SOL_MIGRATION_PROGRAM_ID: {e}") from e

    http_w3 = AsyncWeb3(AsyncHTTPProvider(settings.ethereum_http_rpc_endpoint))
    bridge = BridgeContract(
        http_w3,
        settings.eth_bridge_contract_address,
        admins.eth,
        confirmations=settings.eth_confirmations,
        lock_timeout=settings.eth_nonce_lock_timeout,
    )

    migration = MigrationProgram(
        AsyncClient(settings.solana_rpc_endpoint),
        admins.sol,
        program_id,
        mint,
        commitment=settings.solana_commitment,
    )

    subscription = LogSubscription(
        settings.ethereum_wss_rpc_endpoint,
        settings.eth_bridge_contract_address,
    )

    return ChainHandles(subscription=subscription, bridge=bridge, migration=migration)
