from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from flask import current_app
from extensions import db
from auth.models import User
from credits.models import CreditEventType, Entitlement, LedgerAction
from credits.services.entitlements import lock_entitlement, revoke_access, touch
from credits.services.ledger import (
    add_credits, clamp_balance, claim_marker, insert_or_ignore, lock_wallet, refill, set_allowance, zero_wallet,
)
from plans.catalog import CREDIT_PACKS, Plan, Tier
from plans.resolver import SubscriptionResolution, get_tier_resolver
from ..models import CreditPurchase, ProcessedStripeEvent, SubscriptionSnapshot
from .customers import CustomerLookup, link_customer, resolve_user, sync_authorized_user
from .pending import retire_pending_entitlement, stage_pending_entitlement
from .stripe_client import charge_references, id_of

BLOCK_REASON_REFUND = "Credit purchase refunded"
BLOCK_REASON_DISPUTE = "Credit purchase disputed"


def mark_event(event_id: str, event_type: Optional[str] = None) -> bool:
    """First delivery of a Stripe event id wins; replays return False."""
    if not event_id:
        return True
    return insert_or_ignore(
        ProcessedStripeEvent,
        {"event_id": event_id, "event_type": event_type},
        ("event_id",),
    )


def _log():
    return current_app.logger


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _snapshot(event_id: str, user_id: int, subscription: Dict[str, Any], res: SubscriptionResolution) -> None:
    db.session.add(SubscriptionSnapshot(
        event_id=event_id,
        user_id=user_id,
        stripe_subscription_id=subscription.get("id"),
        status=res.status,
        tier=res.storage_tier,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        current_period_end=res.current_period_end,
    ))


def _stored_tier(ent: Entitlement) -> Optional[Tier]:
    if ent.plan == Plan.FREE:
        return None
    try:
        tier = Tier(ent.tier)
    except ValueError:
        return None
    return None if tier is Tier.FREE else tier


def _enter_grace(ent: Entitlement, *, event_id: str, customer_id: str, subscription_id: str,
                 res: SubscriptionResolution, now: datetime) -> bool:
    """
    Keep the paid plan and the current balance, stop recurring grants, and
    let the sweep flip the plan to free once grace_until passes.

    The entitlement row is locked by the caller, so grace_until is the guard:
    a redelivered cancellation finds it set and leaves downgraded_at alone,
    while a cancel after a reactivation (which cleared it) starts a new cycle.
    The marker only records the cycle, keyed on the event that opened it.
    """
    if ent.in_grace:
        _log().info("[billing.events] user=%s already in grace sub=%s", ent.user_id, subscription_id)
        return False
    claim_marker(ent.user_id, f"{subscription_id}:{event_id or int(now.timestamp())}",
                 CreditEventType.GRACEFUL_DOWNGRADE)
    touch(ent,
          status="active",
          stripe_customer_id=customer_id,
          stripe_subscription_id=subscription_id,
          current_period_end=res.current_period_end,
          grace_until=res.current_period_end or now,
          downgraded_at=now)
    set_allowance(ent.user_id, 0)
    retire_pending_entitlement(ent.user_id, now=now)
    _log().info("[billing.events] grace started user=%s until=%s", ent.user_id, ent.grace_until)
    return True


def _apply_tier_downgrade(ent: Entitlement, previous: Tier, res: SubscriptionResolution, *,
                          customer_id: str, subscription_id: str) -> bool:
    marker = CreditEventType.tier_downgrade(previous.value, res.tier.value)
    if not claim_marker(ent.user_id, subscription_id, marker):
        return False
    wallet = clamp_balance(ent.user_id, res.credit_grant, reference_id=subscription_id,
                           description=f"Tier downgrade {previous.value} -> {res.tier.value}")
    touch(ent,
          plan=res.plan,
          tier=res.storage_tier,
          status=res.entitlement_status,
          stripe_customer_id=customer_id,
          stripe_subscription_id=subscription_id,
          current_period_end=res.current_period_end)
    _log().info("[billing.events] tier downgrade user=%s %s -> %s balance=%s",
                ent.user_id, previous.value, res.tier.value, wallet.credits_balance)
    return True


def _stage_for_unresolved(lookup: CustomerLookup, *, customer_id: str, subscription_id: str,
                          plan: str, tier: str, status: str, credits: int) -> None:
    if not lookup.email:
        _log().warning("[billing.events] cannot stage pending entitlement, no email for customer=%s", customer_id)
        return
    stage_pending_entitlement(lookup.email, customer_id=customer_id, subscription_id=subscription_id,
                              plan=plan, tier=tier, status=status, credits_to_grant=credits)


def on_subscription_changed(event_id: str, subscription: dict):
    res = get_tier_resolver().resolve(subscription)
    customer_id = id_of(subscription.get("customer"))
    subscription_id = subscription.get("id")
    if not customer_id or not subscription_id:
        _log().warning("[billing.events] subscription event %s without customer/subscription id", event_id)
        return
    if res.unmapped_price_ids:
        _log().warning("[billing.events] unmapped price ids %s on sub=%s, treated as non-paid",
                       list(res.unmapped_price_ids), subscription_id)

    lookup = resolve_user(customer_id,
                          allow_provisioning=res.is_paid and not res.is_downgrading,
                          paid_tier=res.is_paid)
    if lookup.email:
        sync_authorized_user(lookup.email, customer_id, res.authorized_status)

    if not lookup.found:
        _stage_for_unresolved(lookup, customer_id=customer_id, subscription_id=subscription_id,
                              plan=res.plan, tier=res.storage_tier, status=res.status, credits=res.credit_grant)
        return

    user_id = lookup.user_id
    now = datetime.now(timezone.utc)
    ent = lock_entitlement(user_id)
    _snapshot(event_id, user_id, subscription, res)

    if ent.is_blocked:
        # refunds/disputes are final; the subscription only updates references
        touch(ent, stripe_customer_id=customer_id, stripe_subscription_id=subscription_id,
              current_period_end=res.current_period_end)
        _log().info("[billing.events] user=%s is blocked; subscription %s not applied", user_id, subscription_id)
        return

    fresh = lookup.was_provisioned
    was_paid = not fresh and ent.is_active_paid
    in_grace = ent.in_grace
    previous = None if fresh or in_grace else _stored_tier(ent)
    now_paid = res.is_active_paid

    # paid -> cheaper paid tier: immediate, no grace
    if (previous is not None and res.tier is not None and now_paid and previous is not res.tier
            and res.credit_grant < get_tier_resolver().grant_for(previous)):
        if _apply_tier_downgrade(ent, previous, res, customer_id=customer_id, subscription_id=subscription_id):
            link_customer(user_id, customer_id, lookup.email)
            return

    price_downgrade = was_paid and not now_paid and not res.is_downgrading and not in_grace
    if price_downgrade:
        _log().info("[billing.events] price downgrade user=%s prices=%s", user_id, list(res.price_ids))

    if (was_paid and res.is_downgrading and not in_grace) or price_downgrade:
        _enter_grace(ent, event_id=event_id, customer_id=customer_id, subscription_id=subscription_id,
                     res=res, now=now)
        link_customer(user_id, customer_id, lookup.email)
        return

    if in_grace and not now_paid:
        # still winding down: keep the grace state, refresh references only
        touch(ent, stripe_customer_id=customer_id, stripe_subscription_id=subscription_id,
              current_period_end=res.current_period_end)
        link_customer(user_id, customer_id, lookup.email)
        return

    touch(ent,
          plan=res.plan,
          tier=res.storage_tier if now_paid else Tier.FREE.value,
          status=res.entitlement_status,
          stripe_customer_id=customer_id,
          stripe_subscription_id=subscription_id,
          current_period_end=res.current_period_end)
    if now_paid:
        touch(ent, grace_until=None, downgraded_at=None)

    if now_paid and (fresh or not was_paid):
        if claim_marker(user_id, subscription_id, CreditEventType.ACTIVATION):
            add_credits(user_id, res.credit_grant, action=LedgerAction.GRANT,
                        reference_type="subscription", reference_id=subscription_id,
                        description=f"Activation {res.storage_tier}")
            _log().info("[billing.events] activation grant user=%s credits=%s", user_id, res.credit_grant)
        else:
            _log().info("[billing.events] activation already granted user=%s sub=%s", user_id, subscription_id)

    # always re-sync, independent of the one-time grant above
    set_allowance(user_id, res.credit_grant if now_paid else 0)

    link_customer(user_id, customer_id, lookup.email)

    if fresh and res.is_paid:
        _stage_for_unresolved(lookup, customer_id=customer_id, subscription_id=subscription_id,
                              plan=res.plan, tier=res.storage_tier, status=res.status, credits=res.credit_grant)


def on_subscription_deleted(event_id: str, subscription: dict):
    res = get_tier_resolver().resolve(subscription)
    customer_id = id_of(subscription.get("customer"))
    subscription_id = subscription.get("id")
    if not customer_id or not subscription_id:
        return

    lookup = resolve_user(customer_id)
    if lookup.email:
        sync_authorized_user(lookup.email, customer_id, "inactive")
    if not lookup.found:
        _stage_for_unresolved(lookup, customer_id=customer_id, subscription_id=subscription_id,
                              plan=Plan.FREE, tier=Tier.FREE.value, status="canceled", credits=0)
        return

    ent = lock_entitlement(lookup.user_id)
    _snapshot(event_id, lookup.user_id, subscription, res)

    if ent.stripe_subscription_id and ent.stripe_subscription_id != subscription_id:
        _log().info("[billing.events] ignoring deletion of stale sub=%s (current=%s) user=%s",
                    subscription_id, ent.stripe_subscription_id, ent.user_id)
        return
    if ent.in_grace:
        _log().info("[billing.events] user=%s already in grace, deletion is a no-op", ent.user_id)
        return
    if ent.plan == Plan.FREE:
        touch(ent, status="inactive", stripe_customer_id=customer_id, stripe_subscription_id=subscription_id)
        set_allowance(ent.user_id, 0)
        retire_pending_entitlement(ent.user_id)
        return

    _enter_grace(ent, event_id=event_id, customer_id=customer_id, subscription_id=subscription_id,
                 res=res, now=datetime.now(timezone.utc))


def on_checkout_completed(event_id: str, session: dict):
    if session.get("mode") != "payment":  # subscriptions are handled by subscription events
        return
    metadata = session.get("metadata") or {}
    if metadata.get("type") != "credit_purchase":
        return

    user_id = _as_int(metadata.get("user_id"))
    package_id = metadata.get("package_id")
    credits = _as_int(metadata.get("credits"))
    if credits is None and package_id in CREDIT_PACKS:
        credits = CREDIT_PACKS[package_id].credits
    if not user_id or not package_id or not credits or credits <= 0:
        _log().warning("[billing.events] invalid credit purchase metadata session=%s %s", session.get("id"), metadata)
        return
    if db.session.get(User, user_id) is None:
        _log().warning("[billing.events] credit purchase for unknown user=%s session=%s", user_id, session.get("id"))
        return

    session_id = session.get("id")
    purchase = CreditPurchase.query.filter_by(stripe_checkout_session_id=session_id).first()
    if purchase and purchase.status != "pending":
        _log().info("[billing.events] purchase %s already %s", session_id, purchase.status)
        return
    if not claim_marker(user_id, session_id, CreditEventType.CREDIT_PURCHASE):
        return

    if purchase is None:
        purchase = CreditPurchase(user_id=user_id, package_id=package_id, credits_purchased=credits,
                                  stripe_checkout_session_id=session_id)
        db.session.add(purchase)
    purchase.stripe_payment_intent_id = id_of(session.get("payment_intent"))
    purchase.status = "completed"
    purchase.updated_at = datetime.now(timezone.utc)

    wallet = add_credits(user_id, credits, action=LedgerAction.PURCHASE, reference_type="checkout_session",
                         reference_id=session_id, description=f"Credit pack {package_id}")
    _log().info("[billing.events] purchase user=%s +%s balance=%s", user_id, credits, wallet.credits_balance)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    sub = id_of(invoice.get("subscription"))
    if sub:
        return sub
    # newer API versions: invoice.parent.subscription_details.subscription
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return id_of(details.get("subscription"))


def on_invoice_paid(event_id: str, invoice: dict):
    subscription_id = _invoice_subscription_id(invoice)
    customer_id = id_of(invoice.get("customer"))
    invoice_id = invoice.get("id")
    if not subscription_id or not customer_id or not invoice_id:
        return

    lookup = resolve_user(customer_id)
    if not lookup.found:
        return
    ent = lock_entitlement(lookup.user_id)
    if ent.stripe_subscription_id != subscription_id:
        _log().info("[billing.events] invoice %s for sub=%s but user=%s has sub=%s, skipping",
                    invoice_id, subscription_id, ent.user_id, ent.stripe_subscription_id)
        return
    if not ent.is_active_paid or ent.in_grace:
        _log().info("[billing.events] user=%s not on an active paid plan, no refill", ent.user_id)
        return

    wallet = lock_wallet(ent.user_id)
    if wallet.last_refill_reference == invoice_id:
        return
    if not claim_marker(ent.user_id, invoice_id, CreditEventType.INVOICE_REFILL):
        return

    amount = wallet.monthly_allowance
    if not amount or amount <= 0:
        amount = get_tier_resolver().stored_grant(ent.tier, ent.plan)
    refill(ent.user_id, amount, reference_id=invoice_id)
    _log().info("[billing.events] refill user=%s credits=%s invoice=%s", ent.user_id, amount, invoice_id)


def _revoke(*, customer_id: Optional[str], payment_intent_id: Optional[str], reference_id: str,
            marker: str, purchase_status: str, block_reason: str, source: str) -> None:
    purchase = None
    if payment_intent_id:
        purchase = CreditPurchase.query.filter_by(stripe_payment_intent_id=payment_intent_id).first()

    user_id = None
    if customer_id:
        user_id = resolve_user(customer_id).user_id
    if user_id is None and purchase is not None:
        user_id = purchase.user_id
    if user_id is None:
        _log().warning("[billing.events] %s %s: no user for customer=%s", source, reference_id, customer_id)
        return

    if not claim_marker(user_id, reference_id, marker):
        _log().info("[billing.events] %s %s already processed", source, reference_id)
        return

    ent = lock_entitlement(user_id)
    now = datetime.now(timezone.utc)
    if purchase is not None:
        purchase.status = purchase_status
        purchase.updated_at = now
        revoke_access(ent, block_reason=block_reason, now=now)
    else:
        revoke_access(ent, now=now)
    zero_wallet(user_id, action=LedgerAction.REVOKE, reference_type=source,
                reference_id=reference_id, description=block_reason if purchase else f"Subscription {source}")
    retire_pending_entitlement(user_id, now=now)
    _log().info("[billing.events] %s %s user=%s blocked=%s", source, reference_id, user_id, ent.is_blocked)


def on_charge_refunded(event_id: str, charge: dict):
    charge_id = charge.get("id")
    if not charge_id:
        return
    _revoke(customer_id=id_of(charge.get("customer")),
            payment_intent_id=id_of(charge.get("payment_intent")),
            reference_id=charge_id,
            marker=CreditEventType.REFUND_PROCESSED,
            purchase_status="refunded",
            block_reason=BLOCK_REASON_REFUND,
            source="refund")


def on_dispute_created(event_id: str, dispute: dict):
    dispute_id = dispute.get("id")
    charge_id = id_of(dispute.get("charge"))
    if not dispute_id or not charge_id:
        return
    # disputes don't carry the customer; a Stripe failure here fails the delivery
    customer_id, payment_intent_id = charge_references(charge_id)
    _revoke(customer_id=customer_id,
            payment_intent_id=payment_intent_id or id_of(dispute.get("payment_intent")),
            reference_id=dispute_id,
            marker=CreditEventType.DISPUTE_PROCESSED,
            purchase_status="disputed",
            block_reason=BLOCK_REASON_DISPUTE,
            source="dispute")
