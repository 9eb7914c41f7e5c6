from typing import Optional
from itsdangerous import URLSafeTimedSerializer, SignatureExpired, BadSignature
from flask import current_app, request
from flask_mail import Mail, Message

mail = Mail()

SETUP_TOKEN_SALT = 'account-setup-salt'


def init_mail(app):
    mail.init_app(app)


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'])


def generate_setup_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"uid": user_id, "email": email}, salt=SETUP_TOKEN_SALT)


def confirm_setup_token(token: str, expiration: Optional[int] = None) -> Optional[dict]:
    if expiration is None:
        expiration = int(current_app.config.get('ACCOUNT_SETUP_TOKEN_MAX_AGE', 3600 * 72))
    try:
        data = _serializer().loads(token, salt=SETUP_TOKEN_SALT, max_age=expiration)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict) or "uid" not in data:
        return None
    return data


def _base_url() -> str:
    base = current_app.config.get("EXTERNAL_BASE_URL")
    if base:
        return str(base).rstrip("/")
    try:
        return str(request.url_root).rstrip("/")
    except RuntimeError:
        # no request context (celery)
        return ""


def setup_link(token: str) -> str:
    return f"{_base_url()}/auth/first-access?token={token}"


def send_email(to: str, subject: str, html_body: str, text_body: str = "") -> bool:
    msg = Message(
        subject,
        recipients=[to],
        html=html_body,
        body=text_body or None,
        sender=current_app.config.get('MAIL_DEFAULT_SENDER') or "no-reply@localhost",
    )
    try:
        mail.send(msg)
        return True
    except Exception as e:
        current_app.logger.exception("[auth.mail] send failed → %s | %s | %r", to, subject, e)
        return False
