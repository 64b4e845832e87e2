"""
Celery configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
import logging

from jewelry_erp.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "jewelry_erp",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "jewelry_erp.modules.recurring.tasks",
        "jewelry_erp.modules.batches.tasks",
        "jewelry_erp.modules.communications.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # Entrega al menos una vez: las tareas toleran re-entregas
    task_time_limit=settings.BATCH_JOB_TIMEOUT,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "recurring.*": {"queue": settings.QUEUE_INVOICES},
        "batches.*": {"queue": settings.QUEUE_BATCHES},
        "communications.*": {"queue": settings.QUEUE_COMMUNICATIONS},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "process-recurring-invoices": {
            "task": "recurring.process_recurring_invoices",
            "schedule": crontab(hour=settings.RECURRING_CYCLE_HOUR, minute=settings.RECURRING_CYCLE_MINUTE),
        },
        "expire-overdue-batches": {
            "task": "batches.expire_overdue_batches",
            "schedule": settings.BATCH_EXPIRY_SWEEP_SECONDS,
        }
    }
)

if __name__ == "__main__":
    celery_app.start()
