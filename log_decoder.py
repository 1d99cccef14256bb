"""Signature-specific EVM log decoding.

There is no ABI toolchain here. Only a fixed set of event shapes is decoded,
each by its own small function keyed by the event's topic[0]:

- Transfer(address indexed from, address indexed to, uint256 value)
  value is the last 256-bit word in `data`; the token is the emitting
  contract (`log.address`). Older tokens that index neither address put
  from, to and value all in `data`, so the value is read from the end.
- Cashback(...) from the sponsor contract, whose `paid` flag is an indexed
  bool in topics[3] (0x00..00 or 0x00..01).

A log that fails to decode is skipped by iter_events(); it never aborts the
evaluation of the other logs in the receipt.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from chain_client import TransactionLog

logger = logging.getLogger(__name__)

EVENT_TRANSFER = "Transfer"
EVENT_CASHBACK = "Cashback"

# keccak256 of the canonical event signatures
EVENT_SIGNATURES: Dict[str, str] = {
    EVENT_TRANSFER: "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
    EVENT_CASHBACK: "0x89d3571a498b5d3d68599f5f00c3016f9604aafa7701c52c1b04109cd909a798",
}

_WORD_HEX_CHARS = 64


class LogDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class TransferEvent:
    token_address: str
    value: int
    sender: Optional[str] = None
    recipient: Optional[str] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class CashbackEvent:
    contract_address: str
    # None when the log carries no topics[3]
    paid: Optional[bool] = None
    log_index: Optional[int] = None


def decode_word(value) -> int:
    """Parse one 32-byte hex word (with or without 0x) into an int."""
    if not isinstance(value, str):
        raise LogDecodeError(f"expected hex string, got {type(value).__name__}")
    digits = value[2:] if value[:2].lower() == "0x" else value
    if not digits:
        raise LogDecodeError("empty word")
    if len(digits) > _WORD_HEX_CHARS:
        raise LogDecodeError(f"word longer than 32 bytes ({len(digits)} hex chars)")
    try:
        return int(digits, 16)
    except ValueError:
        raise LogDecodeError(f"not hex: {value[:80]!r}")


def _topic_address(topic) -> Optional[str]:
    if not isinstance(topic, str) or len(topic) < 40:
        return None
    return "0x" + topic[-40:].lower()


def topic0(log: TransactionLog) -> Optional[str]:
    if not log.topics:
        return None
    return (log.topics[0] or "").lower()


def logs_for(logs: Iterable[TransactionLog], kind: str) -> List[TransactionLog]:
    signature = EVENT_SIGNATURES[kind]
    return [log for log in logs if topic0(log) == signature]


def data_words(data) -> List[str]:
    """Split ABI `data` into its 32-byte words; up to one word may be unpadded."""
    if not isinstance(data, str):
        raise LogDecodeError(f"expected hex string, got {type(data).__name__}")
    digits = data[2:] if data[:2].lower() == "0x" else data
    if len(digits) <= _WORD_HEX_CHARS:
        return [digits]
    if len(digits) % _WORD_HEX_CHARS:
        raise LogDecodeError(f"data is not a whole number of 32-byte words ({len(digits)} hex chars)")
    return [digits[i:i + _WORD_HEX_CHARS] for i in range(0, len(digits), _WORD_HEX_CHARS)]


def decode_transfer(log: TransactionLog) -> TransferEvent:
    words = data_words(log.data)
    value = decode_word(words[-1])
    topics = list(log.topics)
    if len(topics) == 1 and len(words) == 3:
        topics += words[:2]
    return TransferEvent(
        token_address=(log.address or "").lower(),
        value=value,
        sender=_topic_address(topics[1]) if len(topics) > 1 else None,
        recipient=_topic_address(topics[2]) if len(topics) > 2 else None,
        log_index=log.log_index,
    )


def decode_cashback(log: TransactionLog) -> CashbackEvent:
    paid = None
    if len(log.topics) > 3 and log.topics[3]:
        flag = decode_word(log.topics[3])
        if flag not in (0, 1):
            raise LogDecodeError(f"paid flag is not a bool: {flag}")
        paid = flag == 1
    return CashbackEvent(
        contract_address=(log.address or "").lower(),
        paid=paid,
        log_index=log.log_index,
    )


DECODERS: Dict[str, Callable[[TransactionLog], object]] = {
    EVENT_TRANSFER: decode_transfer,
    EVENT_CASHBACK: decode_cashback,
}


def iter_events(logs: Iterable[TransactionLog], kind: str) -> Iterator:
    """Yield decoded events of `kind` in log order, skipping malformed logs."""
    decoder = DECODERS[kind]
    for log in logs_for(logs, kind):
        try:
            yield decoder(log)
        except LogDecodeError as e:
            logger.warning("Skipping malformed %s log from %s (index %s): %s", kind, log.address, log.log_index, e)
            continue
