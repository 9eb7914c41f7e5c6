from __future__ import annotations
import json
from typing import Any, Dict, Optional, Tuple
import stripe
from flask import current_app
from ..errors import MalformedPayload, WebhookSignatureError


def init_stripe(app) -> None:
    stripe.api_key = app.config.get("STRIPE_SECRET_KEY")


def id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def construct_event_from_request(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header over the raw body, then parse it.

    Returns the event as a plain dict so handlers never depend on
    StripeObject behaviour.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPayload("Body is not valid UTF-8") from e

    tolerance = int(current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", stripe.Webhook.DEFAULT_TOLERANCE))
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e) or "Signature mismatch") from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise MalformedPayload("Body is not valid JSON") from e
    if not isinstance(event, dict) or not event.get("type"):
        raise MalformedPayload("Event has no type")
    return event


def customer_email(customer_id: str) -> Optional[str]:
    """
    Email on the Stripe customer, or None when the customer is deleted,
    missing, or has no email. Other Stripe errors propagate so the
    delivery fails and Stripe retries it.
    """
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.InvalidRequestError:
        current_app.logger.warning("stripe_client: customer %s not found", customer_id)
        return None
    if getattr(customer, "deleted", False):
        return None
    return getattr(customer, "email", None) or None


def charge_references(charge_id: str) -> Tuple[Optional[str], Optional[str]]:
    """(customer id, payment intent id) of a charge."""
    charge = stripe.Charge.retrieve(charge_id)
    return id_of(getattr(charge, "customer", None)), id_of(getattr(charge, "payment_intent", None))
