from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt     import Bcrypt
from flask_migrate    import Migrate
import os
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

db      = SQLAlchemy()
bcrypt  = Bcrypt()
migrate = Migrate()


def _rate_limit_key():
    """
    Bucket by JWT identity when the request carries a valid token, else by
    client IP. Limits are checked before the view runs, so the token is
    verified here (optionally) rather than relying on @jwt_required.
    """
    try:
        if verify_jwt_in_request(optional=True) is not None:
            ident = get_jwt_identity()
            if ident is not None and str(ident).strip():
                return f"user:{ident}"
    except (JWTExtendedException, PyJWTError):
        # bad or expired token: the view rejects it, the limit falls back to IP
        pass
    return get_remote_address()

limiter = Limiter(
    key_func=_rate_limit_key,
    storage_uri=os.environ.get("RATE_LIMIT_REDIS_URL")
                 or os.environ.get("REDIS_URL")
                 or "memory://",
    default_limits=["300 per 5 minutes"],
)
