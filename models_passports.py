"""Passport models.

A user holds one passport per event. Each passport carries one
PassportActivity row per event activity; progress is derived from those
rows and recomputed after every completion (never incremented in place).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from extensions import db


VALIDATION_MANUAL = "manual"
VALIDATION_AUTO_TRANSACTION = "auto_transaction"
VALIDATION_AUTO_REFERRAL = "auto_referral_code"

ONCHAIN_USDC_TRANSFER = "usdc_transfer"
ONCHAIN_CASHBACK_EVENT = "cashback_event"
ONCHAIN_TOKEN_TRANSFER = "token_transfer"

PASSPORT_ACTIVITY_PENDING = "pending"
PASSPORT_ACTIVITY_COMPLETED = "completed"


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    wallet_address = Column(String(42), nullable=False, unique=True)
    nickname = Column(String(80), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    passports = relationship("Passport", back_populates="user")

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "nickname": self.nickname,
        }


class Activity(db.Model):
    __tablename__ = "activities"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    num_of_tokens = Column(Integer, nullable=False, default=0)
    requires_proof = Column(Boolean, nullable=False, default=False)
    validation_type = Column(String(40), nullable=False, default=VALIDATION_MANUAL)
    on_chain_validation_type = Column(String(40), nullable=True)
    # minAmount / decimals / tokenAddresses / requirePaid, depending on on_chain_validation_type
    validation_config = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "description": self.description,
            "num_of_tokens": self.num_of_tokens,
            "requires_proof": self.requires_proof,
            "validation_type": self.validation_type,
            "on_chain_validation_type": self.on_chain_validation_type,
            "validation_config": self.validation_config,
        }


class Passport(db.Model):
    __tablename__ = "passports"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(String(36), nullable=True, index=True)
    progress = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="passports")
    activities = relationship("PassportActivity", back_populates="passport", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_passport_user_event"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "progress": self.progress,
            "activities": [pa.to_dict() for pa in self.activities],
        }


class PassportActivity(db.Model):
    __tablename__ = "passport_activities"

    id = Column(Integer, primary_key=True)
    passport_id = Column(String(36), ForeignKey("passports.id"), nullable=False, index=True)
    activity_id = Column(String(36), ForeignKey("activities.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=PASSPORT_ACTIVITY_PENDING)
    requires_proof = Column(Boolean, nullable=False, default=False)
    # Lookup only; the proof row is owned by activity_proofs.
    proof_id = Column(String(36), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    passport = relationship("Passport", back_populates="activities")
    activity = relationship("Activity")

    __table_args__ = (
        UniqueConstraint("passport_id", "activity_id", name="uq_passport_activity"),
        Index("idx_passport_activities_status", "passport_id", "status"),
    )

    def to_dict(self):
        return {
            "passport_id": self.passport_id,
            "activity_id": self.activity_id,
            "status": self.status,
            "requires_proof": self.requires_proof,
            "proof_id": self.proof_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
