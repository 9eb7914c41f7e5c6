from __future__ import annotations
from flask import jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity
from extensions import db, limiter
from auth.models import User
from credits.services.ledger import lock_wallet
from .services.pending import claim_pending_entitlement
from . import billing_bp


@billing_bp.post("/pending/claim")
@limiter.limit("20 per hour")
@jwt_required()
def claim_pending():
    user = db.session.get(User, int(get_jwt_identity()))
    if user is None:
        return jsonify({"ok": False, "error": "user_not_found"}), 404

    ent = claim_pending_entitlement(user)
    if ent is None:
        # a superseded row is closed without being applied
        db.session.commit()
        return jsonify({"ok": True, "claimed": False})

    wallet = lock_wallet(user.id)
    resp = {
        "ok": True,
        "claimed": True,
        "plan": ent.plan,
        "tier": ent.tier,
        "status": ent.status,
        "credits_balance": wallet.credits_balance,
        "monthly_allowance": wallet.monthly_allowance,
    }
    db.session.commit()
    return jsonify(resp)
