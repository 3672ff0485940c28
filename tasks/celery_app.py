"""
tasks/celery_app.py
Celery instance and beat schedule.

    celery -A tasks.celery_app worker -Q payments,default --loglevel=info
    celery -A tasks.celery_app beat --loglevel=info

Beat runs the same sweeps as the /cron endpoints; use one or the other in a
deployment. Both are safe to overlap because every sweep is idempotent.
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "mentorship_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.payment_tasks", "tasks.booking_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Ack after the task body returns so a killed worker's payout is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    task_routes={
        "tasks.payment_tasks.*": {"queue": "payments"},
        "tasks.booking_tasks.*": {"queue": "default"},
    },
)

celery_app.conf.beat_schedule = {
    "cancel-unpaid-bookings": {
        "task": "tasks.booking_tasks.cancel_unpaid_bookings",
        "schedule": crontab(minute="*/10"),
    },
    "send-completion-reminders": {
        "task": "tasks.booking_tasks.send_completion_reminders",
        "schedule": crontab(minute="*/30"),
    },
    "process-daily-payouts": {
        "task": "tasks.booking_tasks.auto_confirm_and_process_payouts",
        "schedule": crontab(hour=2, minute=0),
    },
}
