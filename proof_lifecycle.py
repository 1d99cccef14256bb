"""Proof lifecycle: submission, validation, approval and rewards.

States per (user, activity, passport): none -> pending -> approved|rejected
for manual evidence, none|rejected -> approved|rejected for automatic
validation. Approved is write-once.

Automatic submissions run the pre-flight checks below before any network
call, cheapest first:
  1. activity exists and uses the validator's validation type
  2. passport exists, belongs to the user and lists the activity
  3. no approved proof for the tuple yet
  4. the raw input resolves to a canonical reference
  5. the reference backs no approved proof anywhere in the system
  6. the user never tried this reference for this activity

The partial unique indexes on approved references are the real backstop
against concurrent submissions: the approval is committed first and an
IntegrityError means another request won. A rejected row is only ever
overwritten by an UPDATE guarded on status = rejected, so two submissions
racing on the same tuple cannot both land.

Reward issuance happens after the approval commit and never undoes it. A
failed payout leaves reward_tx_hash NULL, and a claim sent but not yet
confirmed stays "sent"; scripts/reconcile_rewards.py picks up both.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models_passports import (
    PASSPORT_ACTIVITY_COMPLETED,
    VALIDATION_MANUAL,
    Activity,
    Passport,
    PassportActivity,
)
from models_proofs import (
    PROOF_STATUS_APPROVED,
    PROOF_STATUS_PENDING,
    PROOF_STATUS_REJECTED,
    PROOF_TYPE_BOTH,
    PROOF_TYPE_IMAGE,
    PROOF_TYPE_TEXT,
    REWARD_STATUS_CONFIRMED,
    REWARD_STATUS_FAILED,
    REWARD_STATUS_SENT,
    VALIDATED_BY_AUTO,
    ActivityProof,
    ProofAttempt,
)
from proof_validators import OUTCOME_UPSTREAM, ProofValidator

INTERNAL_ERROR = "Internal error while processing the proof. Please try again later."
MANUAL_PROOF_TYPES = (PROOF_TYPE_TEXT, PROOF_TYPE_IMAGE, PROOF_TYPE_BOTH)


@dataclass
class SubmissionResult:
    success: bool
    status_code: int = 200
    proof_id: Optional[str] = None
    status: Optional[str] = None
    tokens_awarded: Optional[int] = None
    reward_tx_hash: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        out = {"success": self.success}
        if self.proof_id:
            out["proofId"] = self.proof_id
        if self.status:
            out["status"] = self.status
        if self.tokens_awarded is not None:
            out["tokensAwarded"] = self.tokens_awarded
        if self.success and self.status == PROOF_STATUS_APPROVED:
            out["rewardTxHash"] = self.reward_tx_hash
        if self.error:
            out["error"] = self.error
        out.update(self.extra)
        return out


def _fail(status_code: int, error: str, **kwargs) -> SubmissionResult:
    return SubmissionResult(False, status_code=status_code, error=error, **kwargs)


def _proof_for(user_id, activity_id, passport_id) -> Optional[ActivityProof]:
    return ActivityProof.query.filter_by(
        user_id=user_id, activity_id=activity_id, passport_id=passport_id
    ).one_or_none()


def _passport_activity(passport_id, activity_id) -> Optional[PassportActivity]:
    return PassportActivity.query.filter_by(passport_id=passport_id, activity_id=activity_id).one_or_none()


def recompute_passport_progress(passport: Passport) -> int:
    """progress = round(100 * completed / total), half up; 0 for an empty passport."""
    rows = PassportActivity.query.filter_by(passport_id=passport.id).all()
    total = len(rows)
    completed = sum(1 for pa in rows if pa.status == PASSPORT_ACTIVITY_COMPLETED)
    passport.progress = (200 * completed + total) // (2 * total) if total else 0
    return passport.progress


def complete_passport_activity(passport: Passport, activity_id: str, proof_id: Optional[str]) -> None:
    pa = _passport_activity(passport.id, activity_id)
    if pa is not None:
        pa.status = PASSPORT_ACTIVITY_COMPLETED
        pa.proof_id = proof_id
        if not pa.completed_at:
            pa.completed_at = datetime.utcnow()
    else:
        current_app.logger.warning("Passport %s has no entry for activity %s", passport.id, activity_id)
    recompute_passport_progress(passport)


def _mark_sent(proof: ActivityProof, tx_hash: str) -> None:
    proof.reward_tx_hash = tx_hash
    proof.reward_status = REWARD_STATUS_SENT
    proof.reward_sent_at = proof.reward_sent_at or datetime.utcnow()


def deliver_reward(proof: ActivityProof, issuer) -> Optional[str]:
    """Issue the proof's tokens and record the claim on the proof.

    The claim hash is committed the moment the node accepts it, so a receipt
    timeout or a crash while waiting leaves a REWARD_STATUS_SENT row that
    reconciliation settles from the receipt instead of paying again. Must be
    called with no other uncommitted changes in the session.

    Returns the claim hash when issue() succeeded, None otherwise.
    """
    quantity = proof.tokens_awarded or 0
    if quantity <= 0:
        return None

    receiver = proof.user.wallet_address if proof.user else None
    if issuer is None or not receiver:
        current_app.logger.error(
            "Cannot issue %s tokens for proof %s: issuer=%r receiver=%r", quantity, proof.id, issuer, receiver
        )
        proof.reward_status = REWARD_STATUS_FAILED
        return None

    def on_broadcast(tx_hash):
        _mark_sent(proof, tx_hash)
        db.session.commit()

    try:
        result = issuer.issue(receiver, quantity, on_broadcast=on_broadcast)
    except Exception as e:
        db.session.rollback()
        tx_hash = getattr(e, "tx_hash", None)
        if getattr(e, "reverted", False):
            proof.reward_tx_hash = None
            proof.reward_status = REWARD_STATUS_FAILED
            proof.reward_sent_at = None
        elif tx_hash:
            _mark_sent(proof, tx_hash)
        elif proof.reward_status != REWARD_STATUS_SENT:
            proof.reward_status = REWARD_STATUS_FAILED
        current_app.logger.exception(
            "Reward issuance failed for proof %s (receiver %s, %s tokens, claim %s)",
            proof.id, receiver, quantity, proof.reward_tx_hash,
        )
        return None

    tx_hash = getattr(result, "transaction_hash", None)
    if tx_hash:
        _mark_sent(proof, tx_hash)
        if getattr(result, "confirmed", False):
            proof.reward_status = REWARD_STATUS_CONFIRMED
    current_app.logger.info("Issued %s tokens to %s for proof %s: %s", quantity, receiver, proof.id, tx_hash)
    return tx_hash


def finalize_approval(proof: ActivityProof, issuer) -> None:
    """Post-commit half of an approval: reward, passport completion, progress."""
    deliver_reward(proof, issuer)
    passport = db.session.get(Passport, proof.passport_id)
    if passport is not None:
        complete_passport_activity(passport, proof.activity_id, proof.id)
    db.session.commit()


class ProofLifecycle:
    """Automatic validation of one kind of reference, parameterised by a validator."""

    def __init__(self, validator: ProofValidator, issuer=None):
        self.validator = validator
        self.issuer = issuer

    def submit(self, user_id, activity_id, passport_id, raw_reference) -> SubmissionResult:
        try:
            return self._submit(user_id, activity_id, passport_id, raw_reference)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Unexpected error validating %s for activity %s", self.validator.noun, activity_id
            )
            return _fail(500, INTERNAL_ERROR)

    def _preflight(self, user_id, activity_id, passport_id, raw_reference):
        v = self.validator

        activity = db.session.get(Activity, activity_id) if activity_id else None
        if activity is None:
            return _fail(404, "Activity not found.")
        if activity.validation_type != v.validation_type:
            return _fail(400, f"This activity does not support {v.noun} validation.")

        passport = db.session.get(Passport, passport_id) if passport_id else None
        if passport is None or passport.user_id != user_id:
            return _fail(404, "Passport not found.")
        pa = _passport_activity(passport.id, activity.id)
        if pa is None:
            return _fail(404, "This activity is not part of the passport.")

        proof = _proof_for(user_id, activity.id, passport.id)
        if (proof is not None and proof.status == PROOF_STATUS_APPROVED) or pa.status == PASSPORT_ACTIVITY_COMPLETED:
            return _fail(409, "You have already completed this activity.", proof_id=proof.id if proof else None)
        if proof is not None and proof.status == PROOF_STATUS_PENDING:
            return _fail(409, "A proof for this activity is already awaiting review.", proof_id=proof.id)

        reference = v.resolve(raw_reference)
        if not reference:
            return _fail(400, v.resolve_error)

        column = getattr(ActivityProof, v.reference_field)
        used = ActivityProof.query.filter(column == reference, ActivityProof.status == PROOF_STATUS_APPROVED).first()
        if used is not None:
            if used.user_id == user_id:
                name = used.activity.name if used.activity else used.activity_id
                return _fail(409, f'You already used this {v.noun} for the activity "{name}".')
            return _fail(409, f"This {v.noun} has already been used by another user.")

        tried = ProofAttempt.query.filter_by(user_id=user_id, activity_id=activity.id, reference=reference).first()
        if tried is not None:
            return _fail(409, f"You already submitted this {v.noun} for this activity. Try a different one.")

        return activity, passport, proof, reference

    def _submit(self, user_id, activity_id, passport_id, raw_reference) -> SubmissionResult:
        checked = self._preflight(user_id, activity_id, passport_id, raw_reference)
        if isinstance(checked, SubmissionResult):
            current_app.logger.info(
                "Pre-flight rejected %s for user %s activity %s: %s",
                self.validator.noun, user_id, activity_id, checked.error,
            )
            return checked
        activity, passport, proof, reference = checked

        outcome = self.validator.validate(reference, activity)
        if not outcome.is_valid:
            return self._reject(user_id, activity, passport, proof, raw_reference, reference, outcome)
        return self._approve(user_id, activity, passport, proof, raw_reference, reference, outcome)

    def _record_attempt(self, user_id, activity, passport, reference, outcome_status, reason=None):
        db.session.add(
            ProofAttempt(
                user_id=user_id,
                activity_id=activity.id,
                passport_id=passport.id,
                proof_type=self.validator.proof_type,
                reference=reference,
                outcome=outcome_status,
                reason=reason,
            )
        )

    def _evidence(self, raw_reference, reference, outcome) -> Dict[str, Any]:
        values = {
            "proof_type": self.validator.proof_type,
            "text_proof": None,
            "image_url": None,
            "transaction_hash": None,
            "transaction_url": None,
            "referral_url": None,
            "referral_code": None,
            "validated_at": datetime.utcnow(),
            "validated_by": VALIDATED_BY_AUTO,
        }
        values.update(self.validator.evidence(raw_reference, reference, outcome))
        return values

    def _write(self, user_id, activity, passport, proof, values) -> Optional[ActivityProof]:
        """Insert the tuple's proof, or overwrite it only while it is still rejected.

        Returns None when another request changed the row after pre-flight.
        Nothing is committed here.
        """
        if proof is None:
            proof = ActivityProof(user_id=user_id, activity_id=activity.id, passport_id=passport.id, **values)
            db.session.add(proof)
            return proof
        rows = ActivityProof.query.filter_by(id=proof.id, status=PROOF_STATUS_REJECTED).update(
            values, synchronize_session=False
        )
        if rows != 1:
            return None
        return proof

    def _lost_race(self, user_id, activity) -> SubmissionResult:
        db.session.rollback()
        current_app.logger.warning(
            "Proof for user %s activity %s changed while validating %s", user_id, activity.id, self.validator.noun
        )
        return _fail(409, "This activity was updated by another request. Refresh and try again.")

    def _reject(self, user_id, activity, passport, proof, raw_reference, reference, outcome) -> SubmissionResult:
        values = self._evidence(raw_reference, reference, outcome)
        values.update(
            status=PROOF_STATUS_REJECTED,
            rejection_reason=outcome.error,
            tokens_awarded=None,
            reward_tx_hash=None,
            reward_status=None,
            reward_sent_at=None,
        )
        proof = self._write(user_id, activity, passport, proof, values)
        if proof is None:
            return self._lost_race(user_id, activity)

        if not outcome.retryable:
            self._record_attempt(user_id, activity, passport, reference, PROOF_STATUS_REJECTED, outcome.error)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return _fail(409, f"You already submitted this {self.validator.noun} for this activity. Try a different one.")

        current_app.logger.info(
            "Proof %s rejected for user %s activity %s: %s", proof.id, user_id, activity.id, outcome.error
        )
        return _fail(
            502 if outcome.code == OUTCOME_UPSTREAM else 400,
            outcome.error,
            proof_id=proof.id,
            status=PROOF_STATUS_REJECTED,
        )

    def _approve(self, user_id, activity, passport, proof, raw_reference, reference, outcome) -> SubmissionResult:
        values = self._evidence(raw_reference, reference, outcome)
        values.update(
            status=PROOF_STATUS_APPROVED,
            rejection_reason=None,
            tokens_awarded=activity.num_of_tokens or 0,
            reward_tx_hash=None,
            reward_status=None,
            reward_sent_at=None,
        )
        proof = self._write(user_id, activity, passport, proof, values)
        if proof is None:
            return self._lost_race(user_id, activity)
        self._record_attempt(user_id, activity, passport, reference, PROOF_STATUS_APPROVED)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            current_app.logger.warning(
                "Concurrent approval lost for user %s activity %s (%s)", user_id, activity.id, reference
            )
            return _fail(409, f"This {self.validator.noun} was already used to complete an activity.")

        current_app.logger.info(
            "Proof %s approved for user %s activity %s (%s)", proof.id, user_id, activity.id, outcome.details
        )
        finalize_approval(proof, self.issuer)

        return SubmissionResult(
            True,
            status_code=200,
            proof_id=proof.id,
            status=PROOF_STATUS_APPROVED,
            tokens_awarded=proof.tokens_awarded,
            reward_tx_hash=proof.reward_tx_hash,
            extra=self.validator.response_extra(proof),
        )


def submit_manual_proof(
    user_id, activity_id, passport_id, proof_type, text_proof=None, image_url=None
) -> SubmissionResult:
    """Store text/image evidence as a pending proof for admin review."""
    text_proof = (text_proof or "").strip() or None
    image_url = (image_url or "").strip() or None

    if proof_type not in MANUAL_PROOF_TYPES:
        return _fail(400, f"proofType must be one of: {', '.join(MANUAL_PROOF_TYPES)}")
    if proof_type in (PROOF_TYPE_TEXT, PROOF_TYPE_BOTH) and not text_proof:
        return _fail(400, "textProof is required for this proof type")
    if proof_type in (PROOF_TYPE_IMAGE, PROOF_TYPE_BOTH) and not image_url:
        return _fail(400, "imageUrl is required for this proof type")

    activity = db.session.get(Activity, activity_id) if activity_id else None
    if activity is None:
        return _fail(404, "Activity not found.")
    if activity.validation_type != VALIDATION_MANUAL:
        return _fail(400, "This activity is validated automatically. Use the matching validation endpoint.")

    passport = db.session.get(Passport, passport_id) if passport_id else None
    if passport is None or passport.user_id != user_id:
        return _fail(404, "Passport not found.")

    proof = _proof_for(user_id, activity.id, passport.id)
    created = proof is None
    if proof is not None:
        if proof.status == PROOF_STATUS_APPROVED:
            return _fail(409, "You have already completed this activity.", proof_id=proof.id)
        if proof.status == PROOF_STATUS_PENDING:
            return _fail(409, "A proof for this activity is already awaiting review.", proof_id=proof.id)

    values = {
        "proof_type": proof_type,
        "text_proof": text_proof,
        "image_url": image_url,
        "status": PROOF_STATUS_PENDING,
        "rejection_reason": None,
        "validated_at": None,
        "validated_by": None,
    }
    if created:
        proof = ActivityProof(user_id=user_id, activity_id=activity.id, passport_id=passport.id, **values)
        db.session.add(proof)
    else:
        rows = ActivityProof.query.filter_by(id=proof.id, status=PROOF_STATUS_REJECTED).update(
            values, synchronize_session=False
        )
        if rows != 1:
            db.session.rollback()
            return _fail(409, "A proof for this activity was already submitted.", proof_id=proof.id)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _fail(409, "A proof for this activity was already submitted.")

    current_app.logger.info("Manual proof %s submitted by user %s for activity %s", proof.id, user_id, activity.id)
    return SubmissionResult(True, status_code=201 if created else 200, proof_id=proof.id, status=PROOF_STATUS_PENDING)


def _transition_from_pending(proof_id, values) -> bool:
    """Compare-and-swap on status; False when the proof left pending meanwhile."""
    rows = ActivityProof.query.filter_by(id=proof_id, status=PROOF_STATUS_PENDING).update(
        values, synchronize_session=False
    )
    if rows != 1:
        db.session.rollback()
        return False
    db.session.commit()
    return True


def approve_proof(proof_id, reviewed_by, issuer) -> SubmissionResult:
    proof = db.session.get(ActivityProof, proof_id)
    if proof is None:
        return _fail(404, "Proof not found.")
    if proof.status != PROOF_STATUS_PENDING:
        return _fail(409, f"Only pending proofs can be approved (current status: {proof.status}).", proof_id=proof.id)

    tokens = proof.activity.num_of_tokens if proof.activity else 0
    ok = _transition_from_pending(
        proof.id,
        {
            "status": PROOF_STATUS_APPROVED,
            "rejection_reason": None,
            "tokens_awarded": tokens or 0,
            "reward_tx_hash": None,
            "reward_status": None,
            "reward_sent_at": None,
            "validated_at": datetime.utcnow(),
            "validated_by": reviewed_by,
        },
    )
    if not ok:
        return _fail(409, "This proof was already reviewed.", proof_id=proof_id)

    proof = db.session.get(ActivityProof, proof_id)
    current_app.logger.info("Proof %s approved by %s", proof.id, reviewed_by)
    finalize_approval(proof, issuer)
    return SubmissionResult(
        True,
        proof_id=proof.id,
        status=PROOF_STATUS_APPROVED,
        tokens_awarded=proof.tokens_awarded,
        reward_tx_hash=proof.reward_tx_hash,
    )


def reject_proof(proof_id, reviewed_by, reason) -> SubmissionResult:
    reason = (reason or "").strip()
    if not reason:
        return _fail(400, "A rejection reason is required.")

    proof = db.session.get(ActivityProof, proof_id)
    if proof is None:
        return _fail(404, "Proof not found.")
    if proof.status != PROOF_STATUS_PENDING:
        return _fail(409, f"Only pending proofs can be rejected (current status: {proof.status}).", proof_id=proof.id)

    ok = _transition_from_pending(
        proof.id,
        {
            "status": PROOF_STATUS_REJECTED,
            "rejection_reason": reason,
            "validated_at": datetime.utcnow(),
            "validated_by": reviewed_by,
        },
    )
    if not ok:
        return _fail(409, "This proof was already reviewed.", proof_id=proof_id)

    current_app.logger.info("Proof %s rejected by %s: %s", proof_id, reviewed_by, reason)
    return SubmissionResult(True, proof_id=proof_id, status=PROOF_STATUS_REJECTED)
