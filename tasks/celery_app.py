"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "talent_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.review_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the check
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    # Routing: notification events are consumed by a separate worker pool
    task_routes={
        settings.NOTIFICATION_TASK_NAME: {"queue": "notifications"},
        "tasks.review_tasks.*": {"queue": "reviews"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Flip review visibility for bookings whose double-blind window has elapsed
    "process-due-review-visibility": {
        "task": "tasks.review_tasks.process_due_review_visibility",
        "schedule": settings.REVIEW_SWEEP_INTERVAL_SECONDS,
    },
}
