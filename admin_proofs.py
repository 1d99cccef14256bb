"""Admin review of activity proofs.

Admin access rules:
- Proof review has its own key: ADMIN_PROOFS_KEY (fallback to ADMIN_API_KEY).
- After key validation an 'admin_proofs' flag is stored in the flask session.

Routes:
- POST /api/admin/proofs/login     {key}
- POST /api/admin/proofs/logout
- GET  /api/admin/proofs?status=pending&activityId=...
- POST /api/admin/proofs/<id>/approve
- POST /api/admin/proofs/<id>/reject  {reason}

Only pending (manual evidence) proofs can be reviewed; auto-validated proofs
are already terminal.
"""

import hmac
import os

from flask import Blueprint, current_app, jsonify, request, session as flask_session

from extensions import db
from models_passports import Activity
from models_proofs import (
    PROOF_STATUS_APPROVED,
    PROOF_STATUS_PENDING,
    PROOF_STATUS_REJECTED,
    ActivityProof,
)
from proof_lifecycle import approve_proof, reject_proof
from proofs import token_issuer


admin_proofs = Blueprint("admin_proofs", __name__)

ADMIN_IDENTITY = "admin"


def _admin_key() -> str:
    return os.getenv("ADMIN_PROOFS_KEY") or os.getenv("ADMIN_API_KEY", "admin123")


def _is_admin() -> bool:
    return bool(flask_session.get("admin_proofs"))


def _require_admin():
    if not _is_admin():
        return jsonify({"success": False, "error": "Admin access required"}), 403
    return None


def _reviewer() -> str:
    return flask_session.get("admin_proofs_identity") or ADMIN_IDENTITY


@admin_proofs.post("/api/admin/proofs/login")
def admin_proofs_login():
    data = request.get_json(silent=True) or {}
    key = (data.get("key") or request.form.get("key") or "").strip()
    if key and hmac.compare_digest(key, str(_admin_key())):
        flask_session["admin_proofs"] = True
        name = (data.get("name") or "").strip()
        if name:
            flask_session["admin_proofs_identity"] = f"admin:{name[:60]}"
        return jsonify({"success": True})
    current_app.logger.warning("Failed proof admin login from %s", request.remote_addr)
    return jsonify({"success": False, "error": "Invalid key"}), 403


@admin_proofs.post("/api/admin/proofs/logout")
def admin_proofs_logout():
    flask_session.pop("admin_proofs", None)
    flask_session.pop("admin_proofs_identity", None)
    return jsonify({"success": True})


@admin_proofs.get("/api/admin/proofs")
def api_admin_list_proofs():
    err = _require_admin()
    if err:
        return err

    status = (request.args.get("status") or "").strip().lower()
    activity_id = (request.args.get("activityId") or "").strip()

    q = ActivityProof.query
    if status:
        if status not in {PROOF_STATUS_PENDING, PROOF_STATUS_APPROVED, PROOF_STATUS_REJECTED}:
            return jsonify({"success": False, "error": "Invalid status"}), 400
        q = q.filter(ActivityProof.status == status)
    if activity_id:
        q = q.filter(ActivityProof.activity_id == activity_id)

    proofs = q.order_by(ActivityProof.created_at.desc()).limit(500).all()

    # Attach activity name and reward for the review UI.
    activity_ids = {p.activity_id for p in proofs}
    activities = Activity.query.filter(Activity.id.in_(activity_ids)).all() if activity_ids else []
    activity_map = {a.id: a for a in activities}

    out = []
    for p in proofs:
        item = p.to_dict()
        a = activity_map.get(p.activity_id)
        if a:
            item["activity"] = {"id": a.id, "name": a.name, "num_of_tokens": a.num_of_tokens}
        out.append(item)

    return jsonify({"success": True, "proofs": out})


@admin_proofs.post("/api/admin/proofs/<proof_id>/approve")
def api_admin_approve_proof(proof_id: str):
    err = _require_admin()
    if err:
        return err

    try:
        result = approve_proof(proof_id, _reviewer(), token_issuer())
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Approving proof %s failed", proof_id)
        return jsonify({"success": False, "error": "Internal error while approving the proof."}), 500
    return jsonify(result.to_dict()), result.status_code


@admin_proofs.post("/api/admin/proofs/<proof_id>/reject")
def api_admin_reject_proof(proof_id: str):
    err = _require_admin()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    try:
        result = reject_proof(proof_id, _reviewer(), data.get("reason"))
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Rejecting proof %s failed", proof_id)
        return jsonify({"success": False, "error": "Internal error while rejecting the proof."}), 500
    return jsonify(result.to_dict()), result.status_code
