"""Celery application configuration."""

from celery import Celery

from talentgate.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "talentgate",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "talentgate.workers.billing_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    task_soft_time_limit=840,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "run-billing-cycle": {
        "task": "talentgate.billing.run_billing_cycle",
        "schedule": settings.billing_cycle_interval_seconds,
        "options": {"queue": "billing"},
    },
    "retry-payment-events": {
        "task": "talentgate.billing.process_pending_payment_events",
        "schedule": 900.0,
        "options": {"queue": "billing"},
    },
}
