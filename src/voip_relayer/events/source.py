"""TokensLocked log subscription over an Ethereum websocket.

The subscription only sees logs emitted after it is established. When a
starting block is known (from the ledger cursor), `stream()` first replays
the logs from that block to the head with eth_getLogs, so logs emitted while
the relayer was down are not lost. The replay may overlap the live stream;
the settlement ledger deduplicates by fingerprint.
"""

import logging
from typing import Any, AsyncIterator, Optional

from web3 import AsyncWeb3, Web3, WebSocketProvider

from voip_relayer.chains import TOKENS_LOCKED_TOPIC
from voip_relayer.exceptions import TransportSetupFailure

logger = logging.getLogger(__name__)


class LogSubscription:
    """Live subscription to the bridge's TokensLocked logs.

    Use as an async context manager; opening it connects and subscribes.

    Example:
        async with LogSubscription(wss_url, bridge_address) as subscription:
            async for log in subscription.stream(from_block=cursor):
                ...
    """

    def __init__(
        self,
        wss_url: str,
        contract_address: str,
        topic: str = TOKENS_LOCKED_TOPIC,
        backfill_chunk: int = 2000,
    ):
        self.wss_url = wss_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = topic
        self.backfill_chunk = backfill_chunk
        self.w3: Optional[AsyncWeb3] = None
        self.subscription_id: Optional[str] = None

    def log_filter(
        self, from_block: Optional[int] = None, to_block: Optional[int] = None
    ) -> dict:
        """Filter params for eth_subscribe / eth_getLogs."""
        params: dict[str, Any] = {
            "address": self.contract_address,
            "topics": [self.topic],
        }
        if from_block is not None:
            params["fromBlock"] = from_block
        if to_block is not None:
            params["toBlock"] = to_block
        return params

    async def __aenter__(self) -> "LogSubscription":
        try:
            self.w3 = AsyncWeb3(WebSocketProvider(self.wss_url))
            await self.w3.provider.connect()
            self.subscription_id = await self.w3.eth.subscribe("logs", self.log_filter())
        except Exception as e:
            await self._disconnect()
            raise TransportSetupFailure(
                f"Failed to set up Ethereum websocket subscription: {e}"
            ) from e

        logger.info(
            f"Subscribed to TokensLocked logs on {self.contract_address} "
            f"(subscription {self.subscription_id})"
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._disconnect()
        return False

    async def _disconnect(self) -> None:
        if self.w3 is not None:
            try:
                await self.w3.provider.disconnect()
            except Exception as e:
                logger.debug(f"Websocket disconnect error: {e}")
        self.w3 = None
        self.subscription_id = None

    def _require_connection(self) -> AsyncWeb3:
        if self.w3 is None:
            raise RuntimeError("Subscription is not open")
        return self.w3

    async def head_block(self) -> int:
        """Current Ethereum block number."""
        return await self._require_connection().eth.block_number

    async def backfill(self, from_block: int) -> AsyncIterator[Any]:
        """Yield historical logs from `from_block` up to the current head."""
        w3 = self._require_connection()
        head = await w3.eth.block_number
        if from_block > head:
            return

        logger.info(f"Backfilling TokensLocked logs from block {from_block} to {head}")
        start = from_block
        while start <= head:
            end = min(start + self.backfill_chunk - 1, head)
            logs = await w3.eth.get_logs(self.log_filter(start, end))
            for log in logs:
                yield log
            start = end + 1

    async def logs(self) -> AsyncIterator[Any]:
        """Yield live logs in arrival order until the socket closes."""
        w3 = self._require_connection()
        async for payload in w3.socket.process_subscriptions():
            yield payload["result"]

    async def stream(self, from_block: Optional[int] = None) -> AsyncIterator[Any]:
        """Backfill from `from_block` (if given), then follow the live stream."""
        if from_block is not None:
            async for log in self.backfill(from_block):
                yield log
        async for log in self.logs():
            yield log
