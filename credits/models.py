from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Boolean, CheckConstraint, Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from extensions import db


class LedgerAction(str):
    GRANT = "grant"        # one-time activation grant
    REFILL = "refill"      # recurring invoice refill
    PURCHASE = "purchase"  # one-off credit pack
    CLAMP = "clamp"        # tier downgrade
    REVOKE = "revoke"      # refund / dispute
    EXPIRE = "expire"      # grace period ran out


class CreditEventType(str):
    ACTIVATION = "activation"
    GRACEFUL_DOWNGRADE = "graceful_downgrade"
    INVOICE_REFILL = "invoice_refill"
    CREDIT_PURCHASE = "credit_purchase"
    REFUND_PROCESSED = "refund_processed"
    DISPUTE_PROCESSED = "dispute_processed"

    @staticmethod
    def tier_downgrade(from_tier: str, to_tier: str) -> str:
        return f"tier_downgrade:{from_tier}:{to_tier}"


class Entitlement(db.Model):
    __tablename__ = "entitlements"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free") # richer tag, e.g. community
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="inactive")
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    grace_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    downgraded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_reason: Mapped[Optional[str]] = mapped_column(String(255))
    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        CheckConstraint("plan IN ('free', 'pro', 'proplus')", name="ck_entitlements_plan"),
        CheckConstraint("tier IN ('free', 'pro', 'proplus', 'community')", name="ck_entitlements_tier"),
        CheckConstraint("status IN ('active', 'inactive', 'trialing')", name="ck_entitlements_status"),
        CheckConstraint("NOT is_blocked OR plan = 'free'", name="ck_entitlements_blocked_is_free"),
    )

    @property
    def is_active_paid(self) -> bool:
        return self.plan != "free" and self.status in ("active", "trialing")

    @property
    def in_grace(self) -> bool:
        return self.grace_until is not None


class CreditWallet(db.Model):
    __tablename__ = "credit_wallet"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_refill_reference: Mapped[Optional[str]] = mapped_column(String(128))
    last_refill_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_credit_wallet_balance_non_negative"),
    )


class CreditEvent(db.Model):
    """Idempotency markers: one row per (user, external reference, event type)."""
    __tablename__ = "credit_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint('user_id', 'reference_id', 'event_type', name='uq_credit_events_user_ref_type'),
    )


class LedgerEntry(db.Model):
    __tablename__ = "credit_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False) # LedgerAction
    amount: Mapped[int] = mapped_column(Integer, nullable=False)    # signed delta
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(32))
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        db.Index('ix_ledger_user_created', 'user_id', 'created_at'),
    )
