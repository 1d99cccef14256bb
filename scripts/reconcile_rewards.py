#!/usr/bin/env python3
"""Retry token rewards for approved proofs whose payout never landed.

Approval and payout are decoupled: a proof can be approved with
tokens_awarded > 0 and no confirmed claim when the issuer failed or the
receipt never arrived. This script walks those proofs one at a time:

- reward_tx_hash NULL: nothing was sent, issue the tokens.
- reward_status "sent": look the claim up first. Confirmed claims are marked
  so; reverted claims, and claims the node has not known of for
  REWARD_DROP_AFTER_SECONDS, are issued again; anything else waits.

A re-issued claim takes the next pending nonce, which is the dropped claim's
nonce, so at most one of the two can be mined. Each proof is committed
before the next one is looked at.

Intended to be run from a scheduler (e.g., Render Cron).
"""

import argparse
import os
from datetime import datetime, timedelta

from sqlalchemy import or_

from app import app
from extensions import db
from models_proofs import (
    PROOF_STATUS_APPROVED,
    REWARD_STATUS_CONFIRMED,
    REWARD_STATUS_FAILED,
    REWARD_STATUS_SENT,
    ActivityProof,
)
from proof_lifecycle import deliver_reward
from proofs import token_issuer
from token_issuance import CLAIM_CONFIRMED, CLAIM_REVERTED, CLAIM_UNKNOWN

REWARD_DROP_AFTER_SECONDS = int(os.getenv("REWARD_DROP_AFTER_SECONDS", "3600"))


def pending_rewards(limit=100):
    return (
        ActivityProof.query.filter(
            ActivityProof.status == PROOF_STATUS_APPROVED,
            ActivityProof.tokens_awarded > 0,
            or_(ActivityProof.reward_tx_hash.is_(None), ActivityProof.reward_status == REWARD_STATUS_SENT),
        )
        .order_by(ActivityProof.validated_at.asc())
        .limit(limit)
        .all()
    )


def _dropped(proof, now):
    sent_at = proof.reward_sent_at or proof.validated_at
    return sent_at is None or now - sent_at >= timedelta(seconds=REWARD_DROP_AFTER_SECONDS)


def _settle_sent(proof, issuer, now):
    """Return the claim state, clearing the claim when it may be issued again."""
    state = issuer.claim_status(proof.reward_tx_hash)
    if state == CLAIM_CONFIRMED:
        proof.reward_status = REWARD_STATUS_CONFIRMED
    elif state == CLAIM_REVERTED or (state == CLAIM_UNKNOWN and _dropped(proof, now)):
        app.logger.warning("Claim %s for proof %s is %s; issuing again", proof.reward_tx_hash, proof.id, state)
        proof.reward_tx_hash = None
        proof.reward_status = REWARD_STATUS_FAILED
        proof.reward_sent_at = None
    db.session.commit()
    return state


def reconcile(issuer, limit=100, dry_run=False):
    issued = failed = confirmed = waiting = 0
    now = datetime.utcnow()
    proofs = pending_rewards(limit)
    for proof in proofs:
        if dry_run:
            app.logger.info(
                "Would settle %s tokens for proof %s (claim %s)", proof.tokens_awarded, proof.id, proof.reward_tx_hash
            )
            continue

        if proof.reward_tx_hash:
            try:
                _settle_sent(proof, issuer, now)
            except Exception:
                db.session.rollback()
                app.logger.exception("Could not check claim %s for proof %s", proof.reward_tx_hash, proof.id)
                waiting += 1
                continue
            if proof.reward_status == REWARD_STATUS_CONFIRMED:
                confirmed += 1
                continue
            if proof.reward_status == REWARD_STATUS_SENT:
                waiting += 1
                continue

        deliver_reward(proof, issuer)
        db.session.commit()
        if proof.reward_status in (REWARD_STATUS_SENT, REWARD_STATUS_CONFIRMED):
            issued += 1
        else:
            failed += 1

    return {
        "ok": True,
        "candidates": len(proofs),
        "issued": issued,
        "confirmed": confirmed,
        "waiting": waiting,
        "failed": failed,
        "dry_run": dry_run,
    }


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    with app.app_context():
        print(reconcile(token_issuer(), limit=args.limit, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
