"""Block-explorer client (Etherscan V2 multichain API, proxy module).

Only two JSON-RPC proxy actions are needed:
- eth_getTransactionByHash
- eth_getTransactionReceipt

No web3.py: requests go through urllib, like the rest of the app's RPC helpers.
Provider failures are normalised into ExplorerError with a stable `code` and a
user-facing `message`. There are no retries; the user may resubmit.
"""

import json
import logging
import os
from http.client import HTTPException
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

ETHERSCAN_API_URL = os.getenv("ETHERSCAN_API_URL", "https://api.etherscan.io/v2/api")
ETHERSCAN_API_KEY = os.getenv("ETHERSCAN_API_KEY", "")
CHAIN_ID = int(os.getenv("CHAIN_ID", "534352"))
EXPLORER_TIMEOUT_SECONDS = float(os.getenv("EXPLORER_TIMEOUT_SECONDS", "15"))

CHAIN_NAMES = {
    1: "Ethereum Mainnet",
    534351: "Scroll Sepolia",
    534352: "Scroll Mainnet",
}

ERR_CONNECTIVITY = "connectivity"
ERR_INVALID_API_KEY = "invalid_api_key"
ERR_RATE_LIMITED = "rate_limited"
ERR_PROVIDER = "provider_error"
ERR_NOT_FOUND = "not_found"
ERR_PENDING = "pending"

MSG_INVALID_API_KEY = "The block explorer API key is not valid. Contact the administrator."
MSG_RATE_LIMITED = "Request limit reached. Please try again in a few minutes."
MSG_GENERIC = (
    "Could not validate the transaction with the block explorer. "
    "The transaction may not exist or there was a problem with the API."
)
MSG_PENDING = "The transaction has not been confirmed yet. Wait a few minutes and try again."


class ExplorerError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _hex_to_int(x) -> Optional[int]:
    if x is None or x == "":
        return None
    if isinstance(x, int):
        return x
    return int(x, 16)


def _normalize_addr(a) -> str:
    return (a or "").lower()


@dataclass
class TransactionLog:
    address: str
    topics: List[str] = field(default_factory=list)
    data: str = "0x"
    log_index: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TransactionLog":
        # Kept raw: malformed topics/data are the decoder's problem, per log.
        topics = raw.get("topics") or []
        if not isinstance(topics, list):
            topics = []
        try:
            log_index = _hex_to_int(raw.get("logIndex"))
        except (TypeError, ValueError):
            log_index = None
        return cls(
            address=_normalize_addr(raw.get("address")),
            topics=[str(t).lower() for t in topics],
            data=raw.get("data") or "0x",
            log_index=log_index,
        )


@dataclass
class ChainTransaction:
    hash: str
    from_address: str
    to_address: str
    block_number: Optional[int]
    value: int = 0

    @property
    def confirmed(self) -> bool:
        return bool(self.block_number)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ChainTransaction":
        return cls(
            hash=(raw.get("hash") or "").lower(),
            from_address=_normalize_addr(raw.get("from")),
            to_address=_normalize_addr(raw.get("to")),
            block_number=_hex_to_int(raw.get("blockNumber")),
            value=_hex_to_int(raw.get("value")) or 0,
        )

    def to_dict(self):
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "block_number": self.block_number,
            "value": str(self.value),
        }


@dataclass
class TransactionReceipt:
    transaction_hash: str
    block_number: Optional[int]
    status: Optional[int]
    from_address: str
    to_address: str
    logs: List[TransactionLog] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TransactionReceipt":
        logs = []
        for entry in raw.get("logs") or []:
            if isinstance(entry, dict):
                logs.append(TransactionLog.from_dict(entry))
        return cls(
            transaction_hash=(raw.get("transactionHash") or "").lower(),
            block_number=_hex_to_int(raw.get("blockNumber")),
            status=_hex_to_int(raw.get("status")),
            from_address=_normalize_addr(raw.get("from")),
            to_address=_normalize_addr(raw.get("to")),
            logs=logs,
        )


def _classify_provider_text(text: str) -> ExplorerError:
    if "Invalid API Key" in text:
        return ExplorerError(ERR_INVALID_API_KEY, MSG_INVALID_API_KEY)
    if "Max rate limit reached" in text:
        return ExplorerError(ERR_RATE_LIMITED, MSG_RATE_LIMITED)
    return ExplorerError(ERR_PROVIDER, f"Block explorer error: {text}")


class ChainDataClient:
    """Fetch transactions and receipts for a single chain."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        chain_id: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = ETHERSCAN_API_KEY if api_key is None else api_key
        self.base_url = base_url or ETHERSCAN_API_URL
        self.chain_id = chain_id or CHAIN_ID
        self.timeout = timeout or EXPLORER_TIMEOUT_SECONDS

    @property
    def chain_name(self) -> str:
        return CHAIN_NAMES.get(self.chain_id, f"chain {self.chain_id}")

    def _proxy(self, action: str, tx_hash: str):
        query = urlencode(
            {
                "chainid": self.chain_id,
                "module": "proxy",
                "action": action,
                "txhash": tx_hash,
                "apikey": self.api_key,
            }
        )
        req = urlrequest.Request(
            f"{self.base_url}?{query}",
            headers={"Accept": "application/json", "User-Agent": "Swagly-Validator/1.0"},
        )
        logger.info("Explorer %s for %s on chain %s", action, tx_hash, self.chain_id)

        try:
            with urlrequest.urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                raw = resp.read().decode("utf-8", errors="ignore")
        except HTTPError as e:
            raise ExplorerError(ERR_CONNECTIVITY, f"Error querying the block explorer: HTTP {e.code}")
        except (URLError, TimeoutError, OSError, HTTPException) as e:
            logger.warning("Explorer unreachable: %s", e)
            raise ExplorerError(ERR_CONNECTIVITY, "Could not connect to the block explorer. Please try again.")

        if status < 200 or status >= 300:
            raise ExplorerError(ERR_CONNECTIVITY, f"Error querying the block explorer: HTTP {status}")

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Explorer returned non-JSON body for %s", action)
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)
        if not isinstance(data, dict):
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)

        # Soft errors come back as HTTP 200: {"status":"0","message":"NOTOK","result":"..."}
        message = data.get("message")
        result = data.get("result")
        if message and message != "OK":
            logger.warning("Explorer soft error on %s: %s / %r", action, message, result)
            if isinstance(result, str) and result:
                raise _classify_provider_text(result)
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)

        if data.get("error"):
            logger.warning("Explorer JSON-RPC error on %s: %r", action, data.get("error"))
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)

        # The proxy sometimes reports limits as a bare string result.
        if isinstance(result, str):
            raise _classify_provider_text(result)

        return result

    def get_transaction(self, tx_hash: str, require_confirmed: bool = True) -> ChainTransaction:
        result = self._proxy("eth_getTransactionByHash", tx_hash)
        if not result:
            raise ExplorerError(
                ERR_NOT_FOUND,
                f"Transaction not found on {self.chain_name}. Check that the link is correct.",
            )

        try:
            tx = ChainTransaction.from_dict(result)
        except (AttributeError, TypeError, ValueError):
            logger.warning("Malformed transaction payload for %s: %r", tx_hash, result)
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)

        if require_confirmed and not tx.confirmed:
            raise ExplorerError(ERR_PENDING, MSG_PENDING)
        return tx

    def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt:
        result = self._proxy("eth_getTransactionReceipt", tx_hash)
        if not result:
            raise ExplorerError(ERR_NOT_FOUND, "Transaction receipt not found.")

        try:
            receipt = TransactionReceipt.from_dict(result)
        except (AttributeError, TypeError, ValueError):
            logger.warning("Malformed receipt payload for %s: %r", tx_hash, result)
            raise ExplorerError(ERR_PROVIDER, MSG_GENERIC)

        logger.info("Receipt for %s has %d logs", tx_hash, len(receipt.logs))
        return receipt
