"""Activity proof models.

- One ActivityProof row per (user, activity, passport). Rejected proofs are
  updated in place on resubmission.
- An approved proof is write-once.
- A transaction hash (or referral URL) backs at most one approved proof in the
  whole system; partial unique indexes enforce this at the database level.
- A reward claim is recorded as soon as it is broadcast (reward_status
  "sent"); reconciliation settles it from the receipt instead of paying twice.
- ProofAttempt is an append-only ledger of every distinct reference a user
  tried for an activity, so the same reference cannot be replayed after the
  proof row has been overwritten.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from extensions import db


PROOF_STATUS_PENDING = "pending"
PROOF_STATUS_APPROVED = "approved"
PROOF_STATUS_REJECTED = "rejected"

PROOF_TYPE_TEXT = "text"
PROOF_TYPE_IMAGE = "image"
PROOF_TYPE_BOTH = "both"
PROOF_TYPE_TRANSACTION = "transaction"
PROOF_TYPE_REFERRAL = "referral"

VALIDATED_BY_AUTO = "auto"

# reward_status: sent = broadcast, receipt not seen yet; failed = nothing on
# chain, safe to issue again.
REWARD_STATUS_SENT = "sent"
REWARD_STATUS_CONFIRMED = "confirmed"
REWARD_STATUS_FAILED = "failed"

_APPROVED_ONLY = text("status = 'approved'")


class ActivityProof(db.Model):
    __tablename__ = "activity_proofs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(String(36), ForeignKey("activities.id"), nullable=False, index=True)
    passport_id = Column(String(36), ForeignKey("passports.id"), nullable=False, index=True)

    proof_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=PROOF_STATUS_PENDING)

    text_proof = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    transaction_hash = Column(String(66), nullable=True, index=True)
    transaction_url = Column(Text, nullable=True)
    referral_url = Column(String(2048), nullable=True)
    referral_code = Column(String(200), nullable=True)

    rejection_reason = Column(Text, nullable=True)
    tokens_awarded = Column(Integer, nullable=True)
    reward_tx_hash = Column(String(66), nullable=True)
    reward_status = Column(String(20), nullable=True)
    reward_sent_at = Column(DateTime, nullable=True)
    validated_at = Column(DateTime, nullable=True)
    validated_by = Column(String(80), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    activity = relationship("Activity")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", "passport_id", name="uq_proof_user_activity_passport"),
        Index(
            "uq_proof_approved_tx_hash",
            "transaction_hash",
            unique=True,
            sqlite_where=_APPROVED_ONLY,
            postgresql_where=_APPROVED_ONLY,
        ),
        Index(
            "uq_proof_approved_referral_url",
            "referral_url",
            unique=True,
            sqlite_where=_APPROVED_ONLY,
            postgresql_where=_APPROVED_ONLY,
        ),
        Index("idx_activity_proofs_status", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "passport_id": self.passport_id,
            "proof_type": self.proof_type,
            "status": self.status,
            "text_proof": self.text_proof,
            "image_url": self.image_url,
            "transaction_hash": self.transaction_hash,
            "transaction_url": self.transaction_url,
            "referral_url": self.referral_url,
            "referral_code": self.referral_code,
            "rejection_reason": self.rejection_reason,
            "tokens_awarded": self.tokens_awarded,
            "reward_tx_hash": self.reward_tx_hash,
            "reward_status": self.reward_status,
            "reward_sent_at": self.reward_sent_at.isoformat() if self.reward_sent_at else None,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
            "validated_by": self.validated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ProofAttempt(db.Model):
    __tablename__ = "proof_attempts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(String(36), ForeignKey("activities.id"), nullable=False, index=True)
    passport_id = Column(String(36), ForeignKey("passports.id"), nullable=False)
    proof_type = Column(String(20), nullable=False)
    reference = Column(String(2048), nullable=False)
    outcome = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", "reference", name="uq_proof_attempt_reference"),
        Index("idx_proof_attempts_created", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "passport_id": self.passport_id,
            "proof_type": self.proof_type,
            "reference": self.reference,
            "outcome": self.outcome,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
