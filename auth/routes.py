from flask import current_app, jsonify, request
from flask_limiter.util import get_remote_address
from extensions import db, limiter
from . import auth_bp
from .models import LocalAuth, User
from .services.accounts import find_user_by_email, normalize_email
from .utils import confirm_setup_token


@auth_bp.route('/first-access', methods=['POST'])
@limiter.limit("10 per hour", key_func=get_remote_address)
def first_access():
    """
    Tell the client whether this email belongs to an account provisioned by
    billing that still has to choose a password.
    """
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get('email'))
    if not email:
        return jsonify(message="Email is required."), 400

    user = find_user_by_email(email)
    if user is None:
        return jsonify(eligible=False, reason="user_not_found")
    if not user.is_provisioned:
        return jsonify(eligible=False, reason="regular_user")
    if not user.needs_password_setup:
        return jsonify(eligible=False, reason="already_setup")
    return jsonify(eligible=True, reason=None)


@auth_bp.route('/first-access/complete', methods=['POST'])
@limiter.limit("10 per hour", key_func=get_remote_address)
def first_access_complete():
    data = request.get_json(silent=True) or {}
    token = data.get('token') or ''
    password = data.get('password') or ''

    claims = confirm_setup_token(token)
    if not claims:
        return jsonify(message="Invalid or expired link."), 400

    user = db.session.get(User, claims["uid"])
    if user is None or normalize_email(claims.get("email")) != user.email:
        return jsonify(message="Invalid or expired link."), 400
    if not user.needs_password_setup:
        return jsonify(message="Account already set up."), 409

    try:
        auth = user.local_auth or LocalAuth(user=user)
        auth.set_password(password)
    except ValueError as ve:
        return jsonify(message=str(ve)), 400

    user.needs_password_setup = False
    auth.email_verified = True
    db.session.add(auth)
    db.session.commit()
    current_app.logger.info("[auth.setup] password set for provisioned user=%s", user.id)
    return jsonify(ok=True)
