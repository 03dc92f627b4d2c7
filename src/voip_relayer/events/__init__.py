"""TokensLocked log subscription and decoding."""

from voip_relayer.events.decoder import (
    DecodeFailure,
    DecodeResult,
    LockEvent,
    LogPosition,
    decode_lock_event,
    rescale_amount,
)
from voip_relayer.events.source import LogSubscription

__all__ = [
    "DecodeFailure",
    "DecodeResult",
    "LockEvent",
    "LogPosition",
    "LogSubscription",
    "decode_lock_event",
    "rescale_amount",
]
