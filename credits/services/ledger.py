from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from extensions import db
from credits.models import CreditEvent, CreditWallet, LedgerAction, LedgerEntry


def _dialect_name() -> str:
    return (db.engine.dialect.name or "").lower()


def supports_for_update() -> bool:
    # SQLite doesn't support SELECT ... FOR UPDATE
    return _dialect_name() not in ("sqlite",)


def insert_or_ignore(model, values: Dict[str, Any], conflict_cols: Sequence[str]) -> bool:
    """
    Atomic conditional insert. Returns True if this call inserted the row,
    False if a row with the same conflict key already existed.
    """
    table = model.__table__
    dialect = _dialect_name()
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_cols))
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_cols))
    else:
        # portable path: SAVEPOINT so a duplicate can't abort the outer tx
        try:
            with db.session.begin_nested():
                db.session.execute(insert(table).values(**values))
            return True
        except IntegrityError:
            return False
    return db.session.execute(stmt).rowcount == 1


def claim_marker(user_id: int, reference_id: str, event_type: str) -> bool:
    """
    Claim the idempotency marker for (user, reference, type).

    The marker commits together with the mutation it guards, so a failed
    request leaves nothing behind and the provider's retry claims it again.
    """
    return insert_or_ignore(
        CreditEvent,
        {"user_id": user_id, "reference_id": str(reference_id), "event_type": event_type},
        ("user_id", "reference_id", "event_type"),
    )


def has_marker(user_id: int, reference_id: str, event_type: str) -> bool:
    return db.session.query(CreditEvent.id).filter_by(
        user_id=user_id, reference_id=str(reference_id), event_type=event_type
    ).first() is not None


def lock_wallet(user_id: int) -> CreditWallet:
    insert_or_ignore(CreditWallet, {"user_id": user_id}, ("user_id",))
    stmt = select(CreditWallet).where(CreditWallet.user_id == user_id)
    if supports_for_update():
        stmt = stmt.with_for_update()
    return db.session.execute(stmt).scalar_one()


def _record(wallet: CreditWallet, action: str, amount: int, *, reference_type: Optional[str],
            reference_id: Optional[str], description: Optional[str] = None) -> None:
    wallet.updated_at = datetime.now(timezone.utc)
    db.session.add(LedgerEntry(
        user_id=wallet.user_id,
        action=action,
        amount=amount,
        balance_after=wallet.credits_balance,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    ))
    db.session.flush()


def add_credits(user_id: int, amount: int, *, action: str, reference_type: str,
                reference_id: str, description: Optional[str] = None) -> CreditWallet:
    wallet = lock_wallet(user_id)
    wallet.credits_balance += amount
    _record(wallet, action, amount, reference_type=reference_type,
            reference_id=reference_id, description=description)
    return wallet


def refill(user_id: int, amount: int, *, reference_id: str) -> CreditWallet:
    """Monthly refill: the balance is reset to the allowance, not topped up."""
    wallet = lock_wallet(user_id)
    delta = amount - wallet.credits_balance
    wallet.credits_balance = amount
    wallet.monthly_allowance = amount
    wallet.last_refill_reference = reference_id
    wallet.last_refill_at = datetime.now(timezone.utc)
    _record(wallet, LedgerAction.REFILL, delta, reference_type="invoice",
            reference_id=reference_id, description="Monthly refill")
    return wallet


def clamp_balance(user_id: int, ceiling: int, *, reference_id: str,
                  description: Optional[str] = None) -> CreditWallet:
    wallet = lock_wallet(user_id)
    before = wallet.credits_balance
    wallet.credits_balance = min(before, ceiling)
    wallet.monthly_allowance = ceiling
    _record(wallet, LedgerAction.CLAMP, wallet.credits_balance - before,
            reference_type="subscription", reference_id=reference_id, description=description)
    return wallet


def zero_wallet(user_id: int, *, action: str, reference_type: str, reference_id: str,
                description: Optional[str] = None) -> CreditWallet:
    wallet = lock_wallet(user_id)
    before = wallet.credits_balance
    wallet.credits_balance = 0
    wallet.monthly_allowance = 0
    _record(wallet, action, -before, reference_type=reference_type,
            reference_id=reference_id, description=description)
    return wallet


def set_allowance(user_id: int, amount: int) -> CreditWallet:
    wallet = lock_wallet(user_id)
    if wallet.monthly_allowance != amount:
        wallet.monthly_allowance = amount
        wallet.updated_at = datetime.now(timezone.utc)
    return wallet
