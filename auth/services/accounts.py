from __future__ import annotations
import secrets
from typing import Any, Dict, Optional
from flask import current_app
from sqlalchemy import func
from extensions import db
from auth.models import LocalAuth, User
from auth.utils import generate_setup_token, send_email, setup_link


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def find_user_by_email(email: str) -> Optional[User]:
    email = normalize_email(email)
    if not email:
        return None
    return User.query.filter(func.lower(User.email) == email).first()


def create_account(email: str, *, password: Optional[str] = None, created_via: str = "admin",
                   metadata: Optional[Dict[str, Any]] = None) -> User:
    """
    Administrative account creation.

    Without a password the account gets a random credential nobody knows and
    is flagged needs_password_setup; the owner finishes through first access.
    """
    email = normalize_email(email)
    if not email or "@" not in email:
        raise ValueError("A valid email is required.")

    user = User(
        email=email,
        name=(metadata or {}).get("name"),
        created_via=created_via,
        needs_password_setup=password is None,
        meta=dict(metadata or {}),
    )
    auth = LocalAuth(user=user)
    if password is None:
        auth.set_unusable_password(secrets.token_urlsafe(32))
    else:
        auth.set_password(password)
    db.session.add(user)
    db.session.add(auth)
    db.session.flush()
    return user


def send_setup_link(user: User) -> bool:
    token = generate_setup_token(user.id, user.email)
    link = setup_link(token)
    html = f"""
        <p>Hi,</p>
        <p>Your subscription is active and an account was created for <strong>{user.email}</strong>.</p>
        <p>Choose a password to finish setting it up: <a href="{link}">{link}</a></p>
    """
    text = f"Your subscription is active. Choose a password to finish setting up your account: {link}"
    ok = send_email(user.email, "Finish setting up your account", html, text)
    if ok:
        current_app.logger.info("[auth.setup] setup link sent user=%s", user.id)
    return ok
