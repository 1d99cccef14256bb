import os

# Must be set before app.py is imported: it binds the database and limiter at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATELIMIT_ENABLED"] = "0"
os.environ["ADMIN_PROOFS_KEY"] = "test-admin-key"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest

from app import app as flask_app
from chain_client import ERR_NOT_FOUND, ChainTransaction, ExplorerError, TransactionLog, TransactionReceipt
from extensions import db
from log_decoder import EVENT_CASHBACK, EVENT_SIGNATURES, EVENT_TRANSFER
from models_passports import (
    ONCHAIN_USDC_TRANSFER,
    PASSPORT_ACTIVITY_COMPLETED,
    PASSPORT_ACTIVITY_PENDING,
    VALIDATION_AUTO_TRANSACTION,
    Activity,
    Passport,
    PassportActivity,
    User,
)
from referral_validator import ReferralResult
from token_issuance import CLAIM_PENDING, IssuanceResult, TokenIssuanceError

USDC = "0x06efdbff2a14a7c8e15944d1f4a48f9f95f663a4"
WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
REWARD_TX = "0x" + "cd" * 32


def _word(value: int) -> str:
    return "0x" + format(value, "064x")


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(value=None, token=USDC, data=None, sender=WALLET_A, recipient=WALLET_B, log_index=0):
    return TransactionLog(
        address=token.lower(),
        topics=[EVENT_SIGNATURES[EVENT_TRANSFER], _address_topic(sender), _address_topic(recipient)],
        data=data if data is not None else _word(value),
        log_index=log_index,
    )


def cashback_log(paid=None, contract="0x" + "c" * 40, log_index=0):
    topics = [EVENT_SIGNATURES[EVENT_CASHBACK], _address_topic(WALLET_A), _word(7)]
    if paid is not None:
        topics.append(_word(1 if paid else 0))
    return TransactionLog(address=contract, topics=topics, data="0x", log_index=log_index)


class FakeChainClient:
    chain_id = 534352

    def __init__(self):
        self.transactions = {}
        self.receipts = {}
        self.errors = {}
        self.calls = []

    def add(self, tx_hash, logs=(), block_number=1234):
        self.transactions[tx_hash] = ChainTransaction(
            hash=tx_hash,
            from_address=WALLET_A,
            to_address=USDC,
            block_number=block_number,
        )
        self.receipts[tx_hash] = TransactionReceipt(
            transaction_hash=tx_hash,
            block_number=block_number,
            status=1,
            from_address=WALLET_A,
            to_address=USDC,
            logs=list(logs),
        )

    def get_transaction(self, tx_hash, require_confirmed=True):
        self.calls.append(("eth_getTransactionByHash", tx_hash))
        if tx_hash in self.errors:
            raise self.errors[tx_hash]
        tx = self.transactions.get(tx_hash)
        if tx is None:
            raise ExplorerError(ERR_NOT_FOUND, "Transaction not found on Scroll Mainnet. Check that the link is correct.")
        return tx

    def get_transaction_receipt(self, tx_hash):
        self.calls.append(("eth_getTransactionReceipt", tx_hash))
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ExplorerError(ERR_NOT_FOUND, "Transaction receipt not found.")
        return receipt


class FakeIssuer:
    """fail: raise before anything is sent. unconfirmed: broadcast, then time out waiting."""

    def __init__(self, fail=False, unconfirmed=False):
        self.fail = fail
        self.unconfirmed = unconfirmed
        self.calls = []
        self.claims = {}

    def issue(self, receiver_address, quantity, on_broadcast=None):
        self.calls.append((receiver_address, quantity))
        if self.fail:
            raise TokenIssuanceError("RPC eth_sendRawTransaction failed")
        if on_broadcast is not None:
            on_broadcast(REWARD_TX)
        if self.unconfirmed:
            raise TokenIssuanceError(f"Claim transaction {REWARD_TX} not confirmed after 0s", tx_hash=REWARD_TX)
        return IssuanceResult(transaction_hash=REWARD_TX, quantity_wei=quantity * 10 ** 18, confirmed=True)

    def claim_status(self, tx_hash):
        return self.claims.get(tx_hash, CLAIM_PENDING)


class FakeReferralValidator:
    def __init__(self):
        self.results = {}
        self.calls = []

    def validate(self, url):
        self.calls.append(url)
        return self.results.get(url, ReferralResult(False, error="No valid referral code was found at this link."))


class Factory:
    """Seed helpers for users, activities and passports."""

    def user(self, wallet=WALLET_A, nickname=None):
        u = User(wallet_address=wallet, nickname=nickname)
        db.session.add(u)
        db.session.commit()
        return u

    def activity(self, name="Bridge USDC", num_of_tokens=10, validation_type=VALIDATION_AUTO_TRANSACTION,
                 on_chain_validation_type=ONCHAIN_USDC_TRANSFER, validation_config=None):
        a = Activity(
            name=name,
            num_of_tokens=num_of_tokens,
            validation_type=validation_type,
            on_chain_validation_type=on_chain_validation_type,
            validation_config=validation_config if validation_config is not None else {"minAmount": 25, "decimals": 6},
            requires_proof=True,
        )
        db.session.add(a)
        db.session.commit()
        return a

    def passport(self, user, activities, completed=(), event_id="event-1"):
        p = Passport(user_id=user.id, event_id=event_id)
        db.session.add(p)
        db.session.flush()
        done = {a.id for a in completed}
        for a in activities:
            db.session.add(
                PassportActivity(
                    passport_id=p.id,
                    activity_id=a.id,
                    requires_proof=a.requires_proof,
                    status=PASSPORT_ACTIVITY_COMPLETED if a.id in done else PASSPORT_ACTIVITY_PENDING,
                )
            )
        db.session.commit()
        return p


@pytest.fixture
def app():
    flask_app.config.update(
        TESTING=True,
        CHAIN_CLIENT=FakeChainClient(),
        TOKEN_ISSUER=FakeIssuer(),
        REFERRAL_VALIDATOR=FakeReferralValidator(),
    )
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def chain(app):
    return app.config["CHAIN_CLIENT"]


@pytest.fixture
def issuer(app):
    return app.config["TOKEN_ISSUER"]


@pytest.fixture
def referrals(app):
    return app.config["REFERRAL_VALIDATOR"]


@pytest.fixture
def factory(app):
    return Factory()
