import json
import os
from datetime import timedelta
from flask import Flask, jsonify
from dotenv import load_dotenv
from flask_jwt_extended import JWTManager
from auth import auth_bp
from billing import billing_bp, billing_webhooks_bp
from billing.errors import BillingError
from billing.services.stripe_client import init_stripe
from extensions import db, bcrypt, migrate, limiter
from auth.utils import init_mail
from plans.resolver import init_tier_resolver

load_dotenv()


def _json_env(name):
    raw = os.getenv(name)
    if not raw:
        return None
    return json.loads(raw)


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        JWT_SECRET_KEY=os.getenv('JWT_SECRET_KEY', os.getenv('SECRET_KEY', 'dev')),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,

        STRIPE_SECRET_KEY=os.getenv('STRIPE_SECRET_KEY'),
        STRIPE_WEBHOOK_SECRET=os.getenv('STRIPE_WEBHOOK_SECRET'),
        STRIPE_WEBHOOK_TOLERANCE=int(os.getenv('STRIPE_WEBHOOK_TOLERANCE', 300)),

        # {"pro": ["price_..."], "proplus": [...], "community": [...]}
        BILLING_PRICE_TIERS=_json_env('BILLING_PRICE_TIERS'),
        # {"pro": 10, "proplus": 100, "community": 999999}
        BILLING_TIER_CREDITS=_json_env('BILLING_TIER_CREDITS'),

        MAIL_SERVER=os.getenv('MAIL_SERVER', 'smtp.gmail.com'),
        MAIL_PORT=int(os.getenv('MAIL_PORT', 587)),
        MAIL_USE_TLS=True,
        MAIL_USE_SSL=False,
        MAIL_USERNAME=os.getenv('MAIL_USERNAME'),
        MAIL_PASSWORD=os.getenv('MAIL_PASSWORD'),
        MAIL_DEFAULT_SENDER=os.getenv('MAIL_DEFAULT_SENDER'),
        EXTERNAL_BASE_URL=os.getenv('EXTERNAL_BASE_URL'),
        ACCOUNT_SETUP_TOKEN_MAX_AGE=int(os.getenv('ACCOUNT_SETUP_TOKEN_MAX_AGE', 3600 * 72)),

        JWT_TOKEN_LOCATION=["headers", "cookies"],
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=1),

        RATELIMIT_HEADERS_ENABLED=True,
    )

    app.config.setdefault('CELERY_BROKER_URL', os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'))
    app.config.setdefault('CELERY_RESULT_BACKEND', os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'))

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)

    limiter.init_app(app)
    JWTManager(app)
    db.init_app(app)
    bcrypt.init_app(app)
    migrate.init_app(app, db)
    init_mail(app)
    init_stripe(app)
    init_tier_resolver(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)

    @app.errorhandler(BillingError)
    def _billing_error(e):
        return jsonify(e.to_dict()), e.status_code

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
