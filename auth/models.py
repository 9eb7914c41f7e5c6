import re
from datetime import datetime, timezone
from sqlalchemy import CheckConstraint
from sqlalchemy.orm import relationship
from extensions import db, bcrypt

utcnow = lambda: datetime.now(timezone.utc)


class TimestampMixin:
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class User(TimestampMixin, db.Model):
    __tablename__ = 'users'
    __table_args__ = (
        # accounts are always keyed by a lower-cased email
        CheckConstraint("email = lower(email)", name="users_email_lowercase"),
        CheckConstraint("created_via IN ('signup', 'stripe_webhook', 'admin')", name="users_created_via"),
    )

    id                   = db.Column(db.Integer, primary_key=True)
    email                = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name                 = db.Column(db.String(255), nullable=True)
    created_via          = db.Column(db.String(32), nullable=False, default='signup')
    needs_password_setup = db.Column(db.Boolean, default=False, nullable=False)
    meta                 = db.Column(db.JSON, nullable=True)

    local_auth = relationship('LocalAuth', back_populates='user', uselist=False, cascade='all, delete-orphan')

    @property
    def is_provisioned(self) -> bool:
        """Created by a billing event rather than by the user signing up."""
        return self.created_via == 'stripe_webhook'

    def __repr__(self):
        return f"<User {self.email}>"


class LocalAuth(db.Model):
    __tablename__ = 'local_auth'
    user_id             = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    password_hash       = db.Column(db.String(128), nullable=False)
    email_verified      = db.Column(db.Boolean, default=False, nullable=False)
    password_changed_at = db.Column(db.DateTime(timezone=True))

    user = db.relationship('User', back_populates='local_auth')

    def _validate_password(self, raw: str):
        pw = raw or ""
        if len(pw) < 8:
            raise ValueError("Password must be at least 8 characters long.")
        if re.search(r'(.)\1\1', pw):
            raise ValueError("No character may repeat three times in a row.")
        if not re.search(r'[A-Z]', pw):
            raise ValueError("Must include at least one uppercase letter.")
        if not re.search(r'\d', pw):
            raise ValueError("Must include at least one digit.")
        if not re.search(r'[^A-Za-z0-9]', pw):
            raise ValueError("Must include at least one special character.")
        user = self.user
        if user and user.email and user.email.split("@")[0].lower() in pw.lower():
            raise ValueError("Password must not contain your email address.")

    def set_password(self, raw: str) -> None:
        self._validate_password(raw)
        self.password_hash = bcrypt.generate_password_hash(raw).decode('utf-8')
        self.password_changed_at = utcnow()

    def set_unusable_password(self, raw: str) -> None:
        """Hash a generated secret the user never sees; skips the strength rules."""
        self.password_hash = bcrypt.generate_password_hash(raw).decode('utf-8')

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return bcrypt.check_password_hash(self.password_hash, password)
