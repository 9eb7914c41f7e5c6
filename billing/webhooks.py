from __future__ import annotations
from flask import request, jsonify, current_app
from extensions import db, limiter
from .errors import BillingError
from .services.stripe_client import construct_event_from_request
from .services.customers import send_queued_setup_links
from .services import events as ev
from . import billing_webhooks_bp

HANDLERS = {
    "customer.subscription.created": ev.on_subscription_changed,
    "customer.subscription.updated": ev.on_subscription_changed,
    "customer.subscription.deleted": ev.on_subscription_deleted,
    "checkout.session.completed": ev.on_checkout_completed,
    "invoice.paid": ev.on_invoice_paid,
    "charge.refunded": ev.on_charge_refunded,
    "charge.dispute.created": ev.on_dispute_created,
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
}


@billing_webhooks_bp.after_request
def _cors(resp):
    for key, value in CORS_HEADERS.items():
        resp.headers[key] = value
    return resp


@billing_webhooks_bp.route("", methods=["POST", "OPTIONS"])
@limiter.exempt
def stripe_webhook():
    if request.method == "OPTIONS":
        return jsonify({"ok": True}), 200

    payload = request.get_data()
    sig = request.headers.get("Stripe-Signature")

    try:
        event = construct_event_from_request(payload, sig)
    except BillingError as e:
        current_app.logger.warning("stripe_webhook: rejected delivery: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    etype = event.get("type")
    evid = event.get("id")
    data_obj = (event.get("data") or {}).get("object") or {}
    handler = HANDLERS.get(etype)

    current_app.logger.info("stripe_webhook: %s %s", etype, evid)

    if not handler:
        return jsonify({"ok": True, "note": f"ignored:{etype}"}), 200

    try:
        if not ev.mark_event(evid, etype):
            db.session.rollback()
            current_app.logger.info("stripe_webhook: duplicate delivery %s", evid)
            return jsonify({"ok": True, "note": "duplicate"}), 200
        handler(evid, data_obj)
        db.session.commit()
    except Exception:
        # surfaced as 500 so Stripe redelivers; nothing from this attempt is kept
        db.session.rollback()
        current_app.logger.exception("stripe_webhook: handler failed for %s %s", etype, evid)
        return jsonify({"ok": False, "handled": etype, "error": "handler_failed"}), 500

    send_queued_setup_links()
    return jsonify({"ok": True, "handled": etype}), 200
