from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Boolean, CheckConstraint, Integer, String, DateTime
from extensions import db


class BillingCustomer(db.Model):
    """Stripe customer id <-> user id <-> email."""
    __tablename__ = "billing_customer"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class PendingEntitlement(db.Model):
    __tablename__ = "billing_pending_entitlement"
    email: Mapped[str] = mapped_column(String(255), primary_key=True) # lower-cased
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64))
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64))
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(32), nullable=False) # raw Stripe status
    credits_to_grant: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    claimed_by_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class CreditPurchase(db.Model):
    __tablename__ = "billing_credit_purchase"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    package_id: Mapped[str] = mapped_column(String(32), nullable=False)
    credits_purchased: Mapped[int] = mapped_column(Integer, nullable=False)
    stripe_checkout_session_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'refunded', 'disputed')", name="ck_credit_purchase_status"),
    )


class AuthorizedUser(db.Model):
    """Email whitelist mirrored from subscription state."""
    __tablename__ = "billing_authorized_user"
    email: Mapped[str] = mapped_column(String(255), primary_key=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), nullable=False) # active | inactive
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class SubscriptionSnapshot(db.Model):
    __tablename__ = "billing_subscription_snapshot"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32)) # active, past_due, canceled, incomplete, etc.
    tier: Mapped[str] = mapped_column(String(16), default="free")
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class ProcessedStripeEvent(db.Model):
    __tablename__ = "billing_processed_event"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(64))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
