"""TokensLocked log decoding.

A log carries the amount in topic 1, the locker's Ethereum address in
topic 2 and the Solana destination as an ABI encoded string in the data
payload. All three fields are decoded independently so a malformed log
reports every broken field at once; the event is usable only when all
three hold non-default values.
"""

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from eth_abi import decode as abi_decode
from eth_utils import encode_hex, to_checksum_address
from hexbytes import HexBytes
from solders.pubkey import Pubkey

from voip_relayer.chains import AMOUNT_BITS, DECIMALS_MULTIPLIER, ZERO_ADDRESS
from voip_relayer.exceptions import LogReadFailure

logger = logging.getLogger(__name__)

AMOUNT_MASK = (1 << AMOUNT_BITS) - 1


def rescale_amount(amount: int) -> int:
    """Scale an Ethereum token amount to Solana precision.

    Multiplies by 10**9 and truncates to 128 bits.
    """
    return (amount * DECIMALS_MULTIPLIER) & AMOUNT_MASK


@dataclass(frozen=True)
class LogPosition:
    """Where a log sits on the Ethereum chain."""

    tx_hash: str
    log_index: int
    block_number: Optional[int] = None


@dataclass(frozen=True)
class LockEvent:
    """A validated TokensLocked event."""

    amount: int
    origin_address: str
    destination_address: Pubkey
    source: Optional[LogPosition] = None

    @property
    def fingerprint(self) -> str:
        """Stable identity used to deduplicate settlements across restarts."""
        parts = [
            self.origin_address.lower(),
            str(self.destination_address),
            str(self.amount),
            self.source.tx_hash.lower() if self.source else "",
            str(self.source.log_index) if self.source else "",
        ]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()


@dataclass(frozen=True)
class DecodeFailure:
    """One field of a log that could not be decoded."""

    field: str
    reason: str

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


@dataclass
class DecodeResult:
    """Outcome of decoding one log: the fields that decoded and the ones that did not."""

    amount: int = 0
    origin_address: str = ZERO_ADDRESS
    destination_address: Pubkey = field(default_factory=Pubkey.default)
    source: Optional[LogPosition] = None
    failures: list[DecodeFailure] = field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return (
            self.amount != 0
            and self.origin_address != ZERO_ADDRESS
            and self.destination_address != Pubkey.default()
        )

    @property
    def event(self) -> Optional[LockEvent]:
        """The LockEvent, or None when any field is missing."""
        if not self.is_usable:
            return None
        return LockEvent(
            amount=self.amount,
            origin_address=self.origin_address,
            destination_address=self.destination_address,
            source=self.source,
        )


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _to_hex(value: Any) -> str:
    if value is None:
        return ""
    return encode_hex(HexBytes(value))


def read_position(raw_log: Mapping) -> Optional[LogPosition]:
    """Extract the log position, or None if the log has no transaction hash."""
    tx_hash = raw_log.get("transactionHash")
    if tx_hash is None:
        return None
    return LogPosition(
        tx_hash=_to_hex(tx_hash),
        log_index=_to_int(raw_log.get("logIndex")) or 0,
        block_number=_to_int(raw_log.get("blockNumber")),
    )


def _topic(raw_log: Mapping, index: int) -> bytes:
    topics = raw_log.get("topics") or []
    if len(topics) <= index:
        raise ValueError(f"log has {len(topics)} topics, topic {index} missing")
    return bytes(HexBytes(topics[index]))


def _decode_amount(raw_log: Mapping) -> int:
    (value,) = abi_decode(["uint256"], _topic(raw_log, 1))
    return rescale_amount(value)


def _decode_origin(raw_log: Mapping) -> str:
    (address,) = abi_decode(["address"], _topic(raw_log, 2))
    return to_checksum_address(address)


def _decode_destination(raw_log: Mapping) -> Pubkey:
    data = bytes(HexBytes(raw_log.get("data") or b""))
    (text,) = abi_decode(["string"], data, strict=False)
    return Pubkey.from_string(text)


def decode_lock_event(raw_log: Any) -> DecodeResult:
    """Decode a TokensLocked log.

    Raises:
        LogReadFailure: If the record is not a log at all.

    Returns:
        DecodeResult; check `is_usable` / `event` before settling.
    """
    if not isinstance(raw_log, Mapping):
        raise LogReadFailure(f"Expected a log mapping, got {type(raw_log).__name__}")

    result = DecodeResult(source=read_position(raw_log))

    try:
        result.amount = _decode_amount(raw_log)
        if result.amount == 0:
            result.failures.append(DecodeFailure("amount", "amount is zero"))
    except Exception as e:
        result.failures.append(DecodeFailure("amount", str(e)))

    try:
        result.origin_address = _decode_origin(raw_log)
        if result.origin_address == ZERO_ADDRESS:
            result.failures.append(DecodeFailure("origin_address", "zero address"))
    except Exception as e:
        result.failures.append(DecodeFailure("origin_address", str(e)))

    try:
        result.destination_address = _decode_destination(raw_log)
        if result.destination_address == Pubkey.default():
            result.failures.append(DecodeFailure("destination_address", "default public key"))
    except Exception as e:
        result.failures.append(DecodeFailure("destination_address", str(e)))

    for failure in result.failures:
        logger.warning(f"Decoding failed for {failure}")

    return result
