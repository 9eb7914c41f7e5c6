from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select
from extensions import db
from credits.models import Entitlement
from credits.services.ledger import insert_or_ignore, supports_for_update


def lock_entitlement(user_id: int) -> Entitlement:
    """Row-locked entitlement for the user, created as free/inactive if missing."""
    insert_or_ignore(Entitlement, {"user_id": user_id}, ("user_id",))
    stmt = select(Entitlement).where(Entitlement.user_id == user_id)
    if supports_for_update():
        stmt = stmt.with_for_update()
    return db.session.execute(stmt).scalar_one()


def touch(ent: Entitlement, **fields) -> Entitlement:
    for key, value in fields.items():
        setattr(ent, key, value)
    ent.updated_at = datetime.now(timezone.utc)
    return ent


def revoke_access(ent: Entitlement, *, block_reason: Optional[str] = None, now: Optional[datetime] = None) -> Entitlement:
    """
    Drop paid access immediately. With a block_reason the account is also
    blocked; the plan is forced to free in the same write so the
    blocked-is-free check constraint always holds.
    """
    now = now or datetime.now(timezone.utc)
    touch(ent, plan="free", tier="free", status="inactive", grace_until=None, downgraded_at=now)
    if block_reason:
        touch(ent, is_blocked=True, blocked_reason=block_reason, blocked_at=now)
    return ent
