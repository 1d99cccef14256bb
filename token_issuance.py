"""Reward token issuance.

Sends `claim(...)` on the drop-style reward token contract from the creator
wallet, so users never sign or pay gas. Signing uses eth_account; the raw
transaction goes out over plain JSON-RPC (no web3.py).

Callers treat any TokenIssuanceError as an operational failure to reconcile
later, never as a reason to reject the user's proof. An error raised after the
claim went out carries its tx_hash: the claim may still be mined, so the
caller must not issue again until claim_status() says it reverted or vanished.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional
from urllib import request as urlrequest

from eth_abi import encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

logger = logging.getLogger(__name__)

CHAIN_RPC_URL = os.getenv("CHAIN_RPC_URL", "https://rpc.scroll.io")
CHAIN_ID = int(os.getenv("CHAIN_ID", "534352"))
SWAG_TOKEN_ADDRESS = os.getenv("SWAG_TOKEN_ADDRESS", "0xb1Ba6FfC5b45df4e8c58D4b2C7Ab809b7D1aa8E1")
TOKEN_DECIMALS = int(os.getenv("TOKEN_DECIMALS", "18"))
CREATOR_WALLET_PRIVATE_KEY = os.getenv("CREATOR_WALLET_PRIVATE_KEY", "")
# Native-token sentinel used by drop contracts for "no ERC20 currency".
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
CLAIM_CURRENCY_ADDRESS = os.getenv("CLAIM_CURRENCY_ADDRESS", NATIVE_TOKEN_ADDRESS)
CLAIM_PRICE_PER_TOKEN = int(os.getenv("CLAIM_PRICE_PER_TOKEN", "0"))
RECEIPT_TIMEOUT_SECONDS = int(os.getenv("CLAIM_RECEIPT_TIMEOUT_SECONDS", "60"))
RECEIPT_POLL_SECONDS = 2

CLAIM_CONFIRMED = "confirmed"
CLAIM_REVERTED = "reverted"
CLAIM_PENDING = "pending"
# the node knows neither a receipt nor the transaction
CLAIM_UNKNOWN = "unknown"

CLAIM_SIGNATURE = "claim(address,uint256,address,uint256,(bytes32[],uint256,uint256,address),bytes)"
CLAIM_ARG_TYPES = [
    "address",
    "uint256",
    "address",
    "uint256",
    "(bytes32[],uint256,uint256,address)",
    "bytes",
]


class TokenIssuanceError(Exception):
    def __init__(self, message: str, payload=None, tx_hash: Optional[str] = None, reverted: bool = False):
        super().__init__(message)
        self.payload = payload
        self.tx_hash = tx_hash
        self.reverted = reverted


@dataclass
class IssuanceResult:
    transaction_hash: Optional[str]
    quantity_wei: int
    confirmed: bool = False


def _rpc_post(url: str, method: str, params=None, timeout=15):
    params = params or []
    payload = json.dumps({"jsonrpc": "2.0", "id": 1, "method": method, "params": params}).encode("utf-8")
    req = urlrequest.Request(url, data=payload, headers={"Content-Type": "application/json"})
    with urlrequest.urlopen(req, timeout=timeout) as resp:
        data = json.loads(resp.read().decode("utf-8"))
    if "error" in data:
        raise TokenIssuanceError(f"RPC {method} failed", data["error"])
    return data.get("result")


def encode_claim_call(receiver: str, quantity_wei: int, currency: str, price_per_token: int = 0) -> bytes:
    """Calldata for claim() with an empty allowlist proof and no extra data."""
    currency = to_checksum_address(currency)
    allowlist_proof = ([], 0, price_per_token, currency)
    args = encode(
        CLAIM_ARG_TYPES,
        [to_checksum_address(receiver), int(quantity_wei), currency, int(price_per_token), allowlist_proof, b""],
    )
    return function_signature_to_4byte_selector(CLAIM_SIGNATURE) + args


class ClaimTokenIssuer:
    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        decimals: Optional[int] = None,
        currency: Optional[str] = None,
        price_per_token: Optional[int] = None,
        wait_for_receipt: bool = True,
    ):
        self.rpc_url = rpc_url or CHAIN_RPC_URL
        self.contract_address = contract_address or SWAG_TOKEN_ADDRESS
        self.private_key = CREATOR_WALLET_PRIVATE_KEY if private_key is None else private_key
        self.chain_id = chain_id or CHAIN_ID
        self.decimals = TOKEN_DECIMALS if decimals is None else decimals
        self.currency = currency or CLAIM_CURRENCY_ADDRESS
        self.price_per_token = CLAIM_PRICE_PER_TOKEN if price_per_token is None else price_per_token
        self.wait_for_receipt = wait_for_receipt

    def _rpc(self, method: str, params=None):
        return _rpc_post(self.rpc_url, method, params)

    def _payable_value(self, quantity_wei: int) -> int:
        if self.price_per_token <= 0 or self.currency.lower() != NATIVE_TOKEN_ADDRESS.lower():
            return 0
        return self.price_per_token * quantity_wei // (10 ** self.decimals)

    def issue(self, receiver_address: str, quantity: int, on_broadcast=None) -> IssuanceResult:
        """Send the claim. on_broadcast(tx_hash) runs right after the node accepts it."""
        if not self.private_key or not self.private_key.strip():
            raise TokenIssuanceError("CREATOR_WALLET_PRIVATE_KEY is not configured")
        if not isinstance(quantity, int) or quantity <= 0:
            raise TokenIssuanceError(f"quantity must be a positive integer, got {quantity!r}")

        key = self.private_key.strip()
        if not key.startswith("0x"):
            key = "0x" + key

        quantity_wei = quantity * (10 ** self.decimals)
        logger.info(
            "Claiming %s tokens (%s wei) for %s on %s (chain %s)",
            quantity, quantity_wei, receiver_address, self.contract_address, self.chain_id,
        )

        try:
            account = Account.from_key(key)
            data = encode_claim_call(receiver_address, quantity_wei, self.currency, self.price_per_token)
            value = self._payable_value(quantity_wei)
            call = {
                "from": account.address,
                "to": to_checksum_address(self.contract_address),
                "data": "0x" + data.hex(),
                "value": hex(value),
            }
            nonce = int(self._rpc("eth_getTransactionCount", [account.address, "pending"]), 16)
            gas_price = int(self._rpc("eth_gasPrice"), 16)
            gas = int(self._rpc("eth_estimateGas", [call]), 16)

            signed = Account.sign_transaction(
                {
                    "nonce": nonce,
                    "gasPrice": gas_price,
                    "gas": gas,
                    "to": call["to"],
                    "value": value,
                    "data": data,
                    "chainId": self.chain_id,
                },
                key,
            )
            tx_hash = self._rpc("eth_sendRawTransaction", ["0x" + bytes(signed.raw_transaction).hex()])
        except TokenIssuanceError:
            raise
        except Exception as e:
            raise TokenIssuanceError(f"Error executing claim: {e}", {"error": str(e)}) from e

        logger.info("Claim transaction sent: %s", tx_hash)
        if on_broadcast is not None:
            try:
                on_broadcast(tx_hash)
            except Exception as e:
                raise TokenIssuanceError(f"Claim {tx_hash} sent but not recorded: {e}", tx_hash=tx_hash) from e
        if self.wait_for_receipt:
            self._await_receipt(tx_hash)
        return IssuanceResult(transaction_hash=tx_hash, quantity_wei=quantity_wei, confirmed=self.wait_for_receipt)

    def claim_status(self, tx_hash: str) -> str:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt:
            return CLAIM_CONFIRMED if int(receipt.get("status") or "0x0", 16) == 1 else CLAIM_REVERTED
        if self._rpc("eth_getTransactionByHash", [tx_hash]) is None:
            return CLAIM_UNKNOWN
        return CLAIM_PENDING

    def _await_receipt(self, tx_hash: str) -> None:
        deadline = time.time() + RECEIPT_TIMEOUT_SECONDS
        while time.time() < deadline:
            try:
                receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
            except Exception as e:
                raise TokenIssuanceError(f"Error waiting for claim receipt: {e}", tx_hash=tx_hash) from e
            if receipt:
                if int(receipt.get("status") or "0x0", 16) != 1:
                    raise TokenIssuanceError(
                        f"Claim transaction {tx_hash} reverted", receipt, tx_hash=tx_hash, reverted=True
                    )
                logger.info("Claim %s confirmed in block %s", tx_hash, receipt.get("blockNumber"))
                return
            time.sleep(RECEIPT_POLL_SECONDS)
        raise TokenIssuanceError(
            f"Claim transaction {tx_hash} not confirmed after {RECEIPT_TIMEOUT_SECONDS}s", tx_hash=tx_hash
        )
