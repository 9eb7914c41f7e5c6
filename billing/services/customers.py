from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from flask import current_app, g
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from auth.models import User
from auth.services.accounts import create_account, find_user_by_email, normalize_email, send_setup_link
from ..errors import ProvisioningError
from ..models import AuthorizedUser, BillingCustomer
from .stripe_client import customer_email


@dataclass(frozen=True)
class CustomerLookup:
    user_id: Optional[int]
    email: Optional[str]
    was_provisioned: bool = False

    @property
    def found(self) -> bool:
        return self.user_id is not None


def link_customer(user_id: int, customer_id: str, email: Optional[str]) -> BillingCustomer:
    row = db.session.get(BillingCustomer, user_id)
    if row is None:
        row = BillingCustomer(user_id=user_id, stripe_customer_id=customer_id)
        db.session.add(row)
    row.stripe_customer_id = customer_id
    if email:
        row.email = normalize_email(email)
    row.updated_at = datetime.now(timezone.utc)
    db.session.flush()
    return row


def _provision(email: str, customer_id: str) -> User:
    try:
        with db.session.begin_nested():
            user = create_account(
                email,
                created_via="stripe_webhook",
                metadata={"stripe_customer_id": customer_id},
            )
            link_customer(user.id, customer_id, email)
        return user
    except (SQLAlchemyError, ValueError) as e:
        raise ProvisioningError(f"could not provision {email}: {e}") from e


def resolve_user(customer_id: str, *, allow_provisioning: bool = False, paid_tier: bool = False) -> CustomerLookup:
    """
    Map a Stripe customer to a user, first match wins:

    1. existing customer mapping
    2. Stripe customer email (deleted / no email -> not found)
    3. account with that email (mapping is persisted)
    4. mapping row carrying that email
    5. provision an account, only for paid, non-downgrading events
    6. otherwise not found
    """
    mapping = BillingCustomer.query.filter_by(stripe_customer_id=customer_id).first()
    if mapping:
        email = mapping.email
        if not email:
            user = db.session.get(User, mapping.user_id)
            email = user.email if user else None
        return CustomerLookup(mapping.user_id, email)

    email = normalize_email(customer_email(customer_id))
    if not email:
        current_app.logger.info("[billing.customers] no email for customer=%s", customer_id)
        return CustomerLookup(None, None)

    user = find_user_by_email(email)
    if user:
        link_customer(user.id, customer_id, email)
        return CustomerLookup(user.id, email)

    by_email = (BillingCustomer.query
                .filter(func.lower(BillingCustomer.email) == email)
                .first())
    if by_email:
        return CustomerLookup(by_email.user_id, email)

    if not (allow_provisioning and paid_tier):
        return CustomerLookup(None, email)

    try:
        user = _provision(email, customer_id)
    except ProvisioningError:
        current_app.logger.exception("[billing.customers] provisioning failed customer=%s", customer_id)
        # a concurrent delivery may have created the account first
        user = find_user_by_email(email)
        if user:
            link_customer(user.id, customer_id, email)
            return CustomerLookup(user.id, email)
        return CustomerLookup(None, email)

    _queue_setup_link(user.id)
    current_app.logger.info("[billing.customers] provisioned user=%s for customer=%s", user.id, customer_id)
    return CustomerLookup(user.id, email, was_provisioned=True)


def sync_authorized_user(email: str, customer_id: str, status: str) -> AuthorizedUser:
    email = normalize_email(email)
    row = db.session.get(AuthorizedUser, email)
    if row is None:
        row = AuthorizedUser(email=email, status=status)
        db.session.add(row)
    row.stripe_customer_id = customer_id
    row.status = status
    row.updated_at = datetime.now(timezone.utc)
    return row


def _queue_setup_link(user_id: int) -> None:
    pending = g.setdefault("billing_setup_links", [])
    pending.append(user_id)


def send_queued_setup_links() -> List[int]:
    """
    Mail setup links for accounts provisioned during this request.
    Call after commit; a mail failure never undoes the billing state.
    """
    sent = []
    for user_id in g.pop("billing_setup_links", []):
        user = db.session.get(User, user_id)
        if user and user.needs_password_setup and send_setup_link(user):
            sent.append(user_id)
    return sent
