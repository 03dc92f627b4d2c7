"""Ethereum VOIP bridge contract: the burnTokens finalization call."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from voip_relayer.chains import BRIDGE_ABI
from voip_relayer.exceptions import FinalizeFailure
from voip_relayer.utils.locks import account_lock

logger = logging.getLogger(__name__)


@dataclass
class BurnReceipt:
    """Confirmed burnTokens transaction."""

    tx_hash: str
    block_number: int
    gas_used: Optional[int] = None


class BridgeContract:
    """Signed calls against the bridge contract.

    Uses an HTTP AsyncWeb3 connection, separate from the websocket used for
    the log subscription.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        address: str,
        admin: LocalAccount,
        confirmations: int = 1,
        receipt_timeout: float = 300,
        poll_interval: float = 2.0,
        lock_timeout: Optional[float] = 60.0,
    ):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.contract = w3.eth.contract(address=self.address, abi=BRIDGE_ABI)
        self.admin = admin
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.lock_timeout = lock_timeout

    async def _submit_burn(self, origin: str, destination: str) -> str:
        # Nonce read and broadcast are one critical section per admin account
        async with account_lock(
            self.admin.address, timeout=self.lock_timeout, operation="burnTokens"
        ):
            nonce = await self.w3.eth.get_transaction_count(self.admin.address, "pending")
            tx = await self.contract.functions.burnTokens(
                Web3.to_checksum_address(origin), destination
            ).build_transaction({"from": self.admin.address, "nonce": nonce})
            signed = self.admin.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _wait_for_confirmations(self, tx_block: int) -> None:
        while True:
            current_block = await self.w3.eth.block_number
            if current_block - tx_block + 1 >= self.confirmations:
                return
            await asyncio.sleep(self.poll_interval)

    async def burn_tokens(self, origin: str, destination: str) -> BurnReceipt:
        """Burn the tokens `origin` locked for `destination`.

        Args:
            origin: Ethereum address that locked the tokens
            destination: Solana address as a base58 string

        Returns:
            BurnReceipt once the transaction has the required confirmations

        Raises:
            FinalizeFailure: If submission fails, the call reverts or it never confirms.
        """
        try:
            tx_hash = await self._submit_burn(origin, destination)
        except Exception as e:
            raise FinalizeFailure(f"burnTokens submission failed: {e}") from e

        logger.debug(f"burnTokens submitted: {tx_hash}")

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_interval
            )
            if receipt["status"] != 1:
                raise FinalizeFailure(f"burnTokens {tx_hash} reverted", tx_hash=tx_hash)
            if self.confirmations > 1:
                await self._wait_for_confirmations(receipt["blockNumber"])
        except FinalizeFailure:
            raise
        except Exception as e:
            raise FinalizeFailure(
                f"burnTokens {tx_hash} not confirmed: {e}", tx_hash=tx_hash
            ) from e

        return BurnReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt.get("gasUsed"),
        )
