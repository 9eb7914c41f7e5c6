# credits/tasks.py
from __future__ import annotations
from celery_app import celery as celery_app
from credits.services.sweep import expire_grace_periods


@celery_app.task(name="credits.expire_grace_periods")
def task_expire_grace_periods():
    return expire_grace_periods()
