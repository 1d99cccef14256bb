"""User-facing proof APIs.

Routes:
- POST /api/proofs/auto-validate            {userId, activityId, passportId, transactionUrl}
- POST /api/proofs/auto-validate-referral   {userId, activityId, passportId, referralUrl}
- POST /api/proofs                          {userId, activityId, passportId, proofType, textProof?, imageUrl?}
- GET  /api/proofs?userId=...&passportId=...

Collaborators come from app.config so tests (and other deployments) can swap
them: CHAIN_CLIENT, REFERRAL_VALIDATOR, TOKEN_ISSUER. Missing entries are
built from environment defaults on first use.
"""

from flask import Blueprint, current_app, jsonify, request

from chain_client import ChainDataClient
from extensions import db, limiter
from models_proofs import ActivityProof
from proof_lifecycle import ProofLifecycle, submit_manual_proof
from proof_validators import ReferralProofValidator, TransactionProofValidator
from referral_validator import ReferralLinkValidator
from token_issuance import ClaimTokenIssuer


proofs_api = Blueprint("proofs_api", __name__)

AUTO_VALIDATE_LIMIT = "10 per minute"


def _collaborator(key, factory):
    obj = current_app.config.get(key)
    if obj is None:
        obj = factory()
        current_app.config[key] = obj
    return obj


def token_issuer():
    return _collaborator("TOKEN_ISSUER", ClaimTokenIssuer)


def _field(data: dict, camel: str, snake: str):
    value = data.get(camel)
    if value is None:
        value = data.get(snake)
    if isinstance(value, str):
        value = value.strip()
    return value or None


def _ids(data: dict):
    return (
        _field(data, "userId", "user_id"),
        _field(data, "activityId", "activity_id"),
        _field(data, "passportId", "passport_id"),
    )


def _respond(result):
    return jsonify(result.to_dict()), result.status_code


@proofs_api.post("/api/proofs/auto-validate")
@limiter.limit(AUTO_VALIDATE_LIMIT)
def auto_validate_transaction():
    data = request.get_json(silent=True) or {}
    user_id, activity_id, passport_id = _ids(data)
    transaction_url = _field(data, "transactionUrl", "transaction_url")

    if not user_id or not activity_id or not passport_id or not transaction_url:
        return jsonify(
            {"success": False, "error": "userId, activityId, passportId and transactionUrl are required"}
        ), 400

    client = _collaborator("CHAIN_CLIENT", ChainDataClient)
    lifecycle = ProofLifecycle(TransactionProofValidator(client), token_issuer())
    return _respond(lifecycle.submit(user_id, activity_id, passport_id, transaction_url))


@proofs_api.post("/api/proofs/auto-validate-referral")
@limiter.limit(AUTO_VALIDATE_LIMIT)
def auto_validate_referral():
    data = request.get_json(silent=True) or {}
    user_id, activity_id, passport_id = _ids(data)
    referral_url = _field(data, "referralUrl", "referral_url")

    if not user_id or not activity_id or not passport_id or not referral_url:
        return jsonify(
            {"success": False, "error": "userId, activityId, passportId and referralUrl are required"}
        ), 400

    link_validator = _collaborator("REFERRAL_VALIDATOR", ReferralLinkValidator)
    lifecycle = ProofLifecycle(ReferralProofValidator(link_validator), token_issuer())
    return _respond(lifecycle.submit(user_id, activity_id, passport_id, referral_url))


@proofs_api.post("/api/proofs")
@limiter.limit("20 per minute")
def submit_proof():
    data = request.get_json(silent=True) or {}
    user_id, activity_id, passport_id = _ids(data)
    if not user_id or not activity_id or not passport_id:
        return jsonify({"success": False, "error": "userId, activityId and passportId are required"}), 400

    try:
        result = submit_manual_proof(
            user_id,
            activity_id,
            passport_id,
            _field(data, "proofType", "proof_type"),
            text_proof=_field(data, "textProof", "text_proof"),
            image_url=_field(data, "imageUrl", "image_url"),
        )
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Manual proof submission failed")
        return jsonify({"success": False, "error": "Internal error while submitting the proof."}), 500
    return _respond(result)


@proofs_api.get("/api/proofs")
def list_proofs():
    user_id = (request.args.get("userId") or "").strip()
    passport_id = (request.args.get("passportId") or "").strip()
    if not user_id:
        return jsonify({"success": False, "error": "userId is required"}), 400

    q = ActivityProof.query.filter_by(user_id=user_id)
    if passport_id:
        q = q.filter_by(passport_id=passport_id)
    proofs = q.order_by(ActivityProof.created_at.desc()).all()
    return jsonify({"success": True, "proofs": [p.to_dict() for p in proofs]})
