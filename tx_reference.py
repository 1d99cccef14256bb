"""Resolve user-supplied transaction references into canonical hashes.

Users paste either a bare hash or a block-explorer link such as
https://scrollscan.com/tx/0x... ; sometimes with surrounding text.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_TX_HASH_SCAN_RE = re.compile(r"(?<![0-9a-zA-Z])(0x[0-9a-fA-F]{64})(?![0-9a-fA-F])")


def is_transaction_hash(value: str) -> bool:
    return bool(_TX_HASH_RE.match(value or ""))


def _hash_from_url(value: str) -> Optional[str]:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None

    segments = [s for s in parts.path.split("/") if s]
    for idx, segment in enumerate(segments[:-1]):
        if segment == "tx":
            candidate = segments[idx + 1]
            if is_transaction_hash(candidate):
                return candidate
            logger.debug("tx segment present but not a valid hash: %r", candidate)
            return None
    return None


def extract_transaction_hash(value) -> Optional[str]:
    """Return the lowercase 0x-prefixed 32-byte hash in `value`, or None.

    Accepts a bare hash, an explorer URL with a /tx/<hash> path, or any text
    containing a hash. Never raises on bad input.
    """
    if not value or not isinstance(value, str):
        return None

    clean = value.strip()
    if is_transaction_hash(clean):
        return clean.lower()

    from_url = _hash_from_url(clean)
    if from_url:
        return from_url.lower()

    match = _TX_HASH_SCAN_RE.search(clean)
    if match:
        return match.group(1).lower()

    logger.info("Could not extract a transaction hash from input: %r", clean[:200])
    return None
