"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "metered_chat",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "report-stale-pending-credits-every-10-minutes": {
        "task": "app.workers.tasks.report_stale_pending_credits",
        "schedule": 600.0,
    },
    "audit-ledger-balances-daily": {
        "task": "app.workers.tasks.audit_ledger_balances",
        "schedule": crontab(hour="3", minute="30"),
    },
}
