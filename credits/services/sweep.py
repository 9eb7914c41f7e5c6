from __future__ import annotations
from datetime import datetime, timezone
from typing import Dict, List, Optional
from flask import current_app
from sqlalchemy import select
from extensions import db
from credits.models import Entitlement, LedgerAction
from credits.services.entitlements import touch
from credits.services.ledger import supports_for_update, zero_wallet


def _due_user_ids(now: datetime) -> List[int]:
    stmt = (select(Entitlement.user_id)
            .where(Entitlement.grace_until.is_not(None))
            .where(Entitlement.grace_until < now)
            .order_by(Entitlement.user_id))
    return list(db.session.execute(stmt).scalars().all())


def expire_grace_periods(now: Optional[datetime] = None) -> Dict[str, object]:
    """
    Close out every grace period that has elapsed: zero the remaining
    credits, move the entitlement to free and clear grace_until.

    Each user commits on its own so one bad row doesn't hold back the rest.
    """
    now = now or datetime.now(timezone.utc)
    user_ids = _due_user_ids(now)

    cleaned = 0
    errors: List[int] = []
    for user_id in user_ids:
        try:
            # re-check under lock: a reactivation may have cleared grace meanwhile
            stmt = (select(Entitlement)
                    .where(Entitlement.user_id == user_id)
                    .where(Entitlement.grace_until.is_not(None))
                    .where(Entitlement.grace_until < now))
            if supports_for_update():
                stmt = stmt.with_for_update()
            ent = db.session.execute(stmt).scalar_one_or_none()
            if ent is None:
                db.session.rollback()
                continue

            zero_wallet(user_id, action=LedgerAction.EXPIRE, reference_type="grace_period",
                        reference_id=f"grace_{ent.stripe_subscription_id or user_id}",
                        description="Grace period expired")
            touch(ent, plan="free", tier="free", status="inactive", grace_until=None)
            db.session.commit()
            cleaned += 1
        except Exception:
            db.session.rollback()
            errors.append(user_id)
            current_app.logger.exception("[credits.sweep] grace expiry failed for user=%s", user_id)

    current_app.logger.info("[credits.sweep] processed=%s cleaned=%s errors=%s", len(user_ids), cleaned, len(errors))
    return {"processed": len(user_ids), "cleaned": cleaned, "errors": errors}
