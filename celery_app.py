from celery import Celery
import os
from celery.schedules import crontab


def _create_flask_app():
    # imported lazily so `celery -A celery_app` doesn't build the app twice
    from app import create_app
    return create_app()


celery = Celery(
    __name__,
    include=[
        "credits.tasks",
    ],
)

celery.conf.update(
    broker_url=os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'),
    result_backend=os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'),
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=os.getenv('CELERY_TIMEZONE', 'UTC'),
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)
celery.conf.beat_schedule = {
    "credits-expire-grace-periods-hourly": {
        "task": "credits.expire_grace_periods",
        "schedule": crontab(minute=0),
    },
}


class AppContextTask(celery.Task):
    """Run every task inside a Flask app context so db.session and current_app work."""
    _flask_app = None

    def __call__(self, *args, **kwargs):
        if AppContextTask._flask_app is None:
            AppContextTask._flask_app = _create_flask_app()

        with AppContextTask._flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = AppContextTask
