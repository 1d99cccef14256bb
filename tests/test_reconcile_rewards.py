from datetime import datetime, timedelta

import pytest

import token_issuance
from conftest import REWARD_TX, FakeIssuer
from extensions import db
from models_proofs import (
    PROOF_STATUS_APPROVED,
    PROOF_STATUS_REJECTED,
    PROOF_TYPE_TRANSACTION,
    REWARD_STATUS_CONFIRMED,
    REWARD_STATUS_FAILED,
    REWARD_STATUS_SENT,
    ActivityProof,
)
from scripts.reconcile_rewards import pending_rewards, reconcile
from token_issuance import CLAIM_CONFIRMED, CLAIM_REVERTED, CLAIM_UNKNOWN, ClaimTokenIssuer

OLD_CLAIM = "0x" + "0e" * 32


def _proof(user, activity, passport, status=PROOF_STATUS_APPROVED, tokens=10, reward_tx_hash=None,
           reward_status=None, reward_sent_at=None):
    proof = ActivityProof(
        user_id=user.id,
        activity_id=activity.id,
        passport_id=passport.id,
        proof_type=PROOF_TYPE_TRANSACTION,
        status=status,
        tokens_awarded=tokens,
        reward_tx_hash=reward_tx_hash,
        reward_status=reward_status,
        reward_sent_at=reward_sent_at,
        validated_at=datetime.utcnow(),
    )
    db.session.add(proof)
    db.session.commit()
    return proof


def _seed(factory, count):
    user = factory.user()
    activities = [factory.activity(name=f"Quest {i}") for i in range(count)]
    passport = factory.passport(user, activities)
    return user, activities, passport


def _sent_claim(factory, sent_at=None):
    user, activities, passport = _seed(factory, 1)
    proof = _proof(user, activities[0], passport, reward_tx_hash=OLD_CLAIM, reward_status=REWARD_STATUS_SENT,
                   reward_sent_at=sent_at or datetime.utcnow())
    return user, proof


def test_only_unpaid_approved_proofs_are_candidates(factory):
    user, activities, passport = _seed(factory, 5)
    unpaid = _proof(user, activities[0], passport)
    _proof(user, activities[1], passport, reward_tx_hash="0x" + "11" * 32, reward_status=REWARD_STATUS_CONFIRMED)
    _proof(user, activities[2], passport, status=PROOF_STATUS_REJECTED, tokens=None)
    _proof(user, activities[3], passport, tokens=0)
    unconfirmed = _proof(user, activities[4], passport, reward_tx_hash=OLD_CLAIM, reward_status=REWARD_STATUS_SENT)

    assert sorted(p.id for p in pending_rewards()) == sorted([unpaid.id, unconfirmed.id])


def test_reconcile_issues_missing_rewards(factory):
    user, activities, passport = _seed(factory, 1)
    proof = _proof(user, activities[0], passport)
    issuer = FakeIssuer()

    summary = reconcile(issuer)

    assert summary["issued"] == 1
    assert summary["failed"] == 0
    assert issuer.calls == [(user.wallet_address, 10)]
    proof = db.session.get(ActivityProof, proof.id)
    assert proof.reward_tx_hash == REWARD_TX
    assert proof.reward_status == REWARD_STATUS_CONFIRMED


def test_reconcile_leaves_failures_for_next_run(factory):
    user, activities, passport = _seed(factory, 1)
    proof = _proof(user, activities[0], passport)

    summary = reconcile(FakeIssuer(fail=True))

    assert summary["failed"] == 1
    proof = db.session.get(ActivityProof, proof.id)
    assert proof.reward_tx_hash is None
    assert proof.reward_status == REWARD_STATUS_FAILED
    assert pending_rewards() == [proof]


def test_unconfirmed_claim_is_not_paid_twice(factory):
    user, activities, passport = _seed(factory, 1)
    proof = _proof(user, activities[0], passport)
    issuer = FakeIssuer(unconfirmed=True)

    first = reconcile(issuer)
    second = reconcile(issuer)

    assert len(issuer.calls) == 1
    assert first["issued"] == 1
    assert second["waiting"] == 1
    proof = db.session.get(ActivityProof, proof.id)
    assert proof.reward_tx_hash == REWARD_TX
    assert proof.reward_status == REWARD_STATUS_SENT


def test_confirmed_claim_is_settled_without_issuing(factory):
    _, proof = _sent_claim(factory)
    issuer = FakeIssuer()
    issuer.claims[OLD_CLAIM] = CLAIM_CONFIRMED

    summary = reconcile(issuer)

    assert summary["confirmed"] == 1
    assert issuer.calls == []
    assert db.session.get(ActivityProof, proof.id).reward_status == REWARD_STATUS_CONFIRMED
    assert pending_rewards() == []


def test_reverted_claim_is_issued_again(factory):
    user, proof = _sent_claim(factory)
    issuer = FakeIssuer()
    issuer.claims[OLD_CLAIM] = CLAIM_REVERTED

    summary = reconcile(issuer)

    assert summary["issued"] == 1
    assert issuer.calls == [(user.wallet_address, 10)]
    assert db.session.get(ActivityProof, proof.id).reward_tx_hash == REWARD_TX


@pytest.mark.parametrize("age, reissued", [(timedelta(minutes=5), False), (timedelta(hours=2), True)])
def test_vanished_claim_is_issued_again_only_once_stale(factory, age, reissued):
    _, proof = _sent_claim(factory, sent_at=datetime.utcnow() - age)
    issuer = FakeIssuer()
    issuer.claims[OLD_CLAIM] = CLAIM_UNKNOWN

    reconcile(issuer)

    assert bool(issuer.calls) is reissued
    expected = REWARD_TX if reissued else OLD_CLAIM
    assert db.session.get(ActivityProof, proof.id).reward_tx_hash == expected


def test_claim_lookup_failure_waits(factory):
    _, proof = _sent_claim(factory)

    class Unreachable(FakeIssuer):
        def claim_status(self, tx_hash):
            raise OSError("rpc down")

    issuer = Unreachable()
    summary = reconcile(issuer)

    assert summary["waiting"] == 1
    assert issuer.calls == []
    assert db.session.get(ActivityProof, proof.id).reward_tx_hash == OLD_CLAIM


def test_receipt_timeout_broadcasts_once_across_runs(factory, monkeypatch):
    user, activities, passport = _seed(factory, 1)
    _proof(user, activities[0], passport)
    sent = []

    def fake_rpc_post(url, method, params=None, timeout=15):
        replies = {
            "eth_getTransactionCount": "0x1",
            "eth_gasPrice": "0x1",
            "eth_estimateGas": "0x5208",
            "eth_getTransactionReceipt": None,
            "eth_getTransactionByHash": {"hash": REWARD_TX},
        }
        if method == "eth_sendRawTransaction":
            sent.append(params[0])
            return REWARD_TX
        return replies[method]

    monkeypatch.setattr(token_issuance, "_rpc_post", fake_rpc_post)
    monkeypatch.setattr(token_issuance, "RECEIPT_TIMEOUT_SECONDS", 0)
    issuer = ClaimTokenIssuer(
        rpc_url="http://rpc.local",
        contract_address="0x" + "12" * 20,
        private_key="0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318",
        chain_id=534352,
    )

    reconcile(issuer)
    reconcile(issuer)

    assert len(sent) == 1


def test_dry_run_does_not_issue(factory):
    user, activities, passport = _seed(factory, 1)
    _proof(user, activities[0], passport)
    issuer = FakeIssuer()

    summary = reconcile(issuer, dry_run=True)

    assert summary["candidates"] == 1
    assert issuer.calls == []
