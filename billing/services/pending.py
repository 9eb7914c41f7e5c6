from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from flask import current_app
from extensions import db
from auth.models import User
from auth.services.accounts import normalize_email
from credits.models import CreditEventType, Entitlement, LedgerAction
from credits.services.entitlements import lock_entitlement, touch
from credits.services.ledger import add_credits, claim_marker, has_marker, set_allowance
from plans.resolver import entitlement_status_for
from ..models import PendingEntitlement
from .customers import link_customer


def stage_pending_entitlement(email: str, *, customer_id: Optional[str], subscription_id: Optional[str],
                              plan: str, tier: str, status: str, credits_to_grant: int) -> PendingEntitlement:
    """Park billing state for an email that has no account yet."""
    email = normalize_email(email)
    row = db.session.get(PendingEntitlement, email)
    if row is None:
        row = PendingEntitlement(email=email, status=status)
        db.session.add(row)
    if row.stripe_subscription_id != subscription_id:
        # a different subscription is a fresh claim
        row.claimed_at = None
        row.claimed_by_user_id = None
    row.stripe_customer_id = customer_id
    row.stripe_subscription_id = subscription_id
    row.plan = plan
    row.tier = tier
    row.status = status
    row.credits_to_grant = credits_to_grant
    row.updated_at = datetime.now(timezone.utc)
    db.session.flush()
    current_app.logger.info("[billing.pending] staged %s plan=%s status=%s credits=%s",
                            email, plan, status, credits_to_grant)
    return row


def _close(row: PendingEntitlement, user_id: int, now: datetime) -> None:
    row.claimed_at = now
    row.claimed_by_user_id = user_id
    row.updated_at = now


def retire_pending_entitlement(user_id: int, *, now: Optional[datetime] = None) -> Optional[PendingEntitlement]:
    """
    Close the user's unclaimed pending row once a webhook has moved their
    entitlement on (grace, deletion, revocation), so a later claim can't
    replay the stale plan over it.
    """
    user = db.session.get(User, user_id)
    if user is None:
        return None
    row = db.session.get(PendingEntitlement, normalize_email(user.email))
    if row is None or row.claimed_at is not None:
        return None
    _close(row, user_id, now or datetime.now(timezone.utc))
    current_app.logger.info("[billing.pending] retired pending entitlement for user=%s", user_id)
    return row


def claim_pending_entitlement(user: User) -> Optional[Entitlement]:
    """
    Apply an unclaimed pending entitlement to the user's account.

    Nothing is applied when the webhook path already owns this subscription
    (its activation marker exists) or the entitlement is in grace; the row
    is closed either way. The credit grant shares the activation marker, so
    a provisioned account never gets its grant twice.
    """
    row = db.session.get(PendingEntitlement, normalize_email(user.email))
    if row is None or row.claimed_at is not None:
        return None

    now = datetime.now(timezone.utc)
    ent = lock_entitlement(user.id)
    if ent.is_blocked:
        current_app.logger.warning("[billing.pending] user=%s is blocked; pending entitlement left unclaimed", user.id)
        return None

    applied = row.stripe_subscription_id and has_marker(user.id, row.stripe_subscription_id,
                                                        CreditEventType.ACTIVATION)
    if applied or ent.in_grace:
        _close(row, user.id, now)
        current_app.logger.info("[billing.pending] user=%s pending entitlement superseded (sub=%s in_grace=%s)",
                                user.id, row.stripe_subscription_id, ent.in_grace)
        return None

    if row.stripe_customer_id:
        link_customer(user.id, row.stripe_customer_id, user.email)

    status = entitlement_status_for(row.status)
    if row.plan != "free" and status in ("active", "trialing"):
        touch(ent, plan=row.plan, tier=row.tier, status=status,
              stripe_customer_id=row.stripe_customer_id,
              stripe_subscription_id=row.stripe_subscription_id,
              grace_until=None, downgraded_at=None)
        set_allowance(user.id, row.credits_to_grant)
        reference = row.stripe_subscription_id or f"pending:{row.email}"
        if row.credits_to_grant > 0 and claim_marker(user.id, reference, CreditEventType.ACTIVATION):
            add_credits(user.id, row.credits_to_grant, action=LedgerAction.GRANT,
                        reference_type="subscription", reference_id=reference,
                        description="Pending entitlement claimed")
    else:
        touch(ent, stripe_customer_id=row.stripe_customer_id or ent.stripe_customer_id)

    _close(row, user.id, now)
    current_app.logger.info("[billing.pending] user=%s claimed plan=%s", user.id, row.plan)
    return ent
