"""
Tareas de Celery de la facturación recurrente.
"""
from datetime import date
from typing import Optional
import logging

from jewelry_erp.common.mixins import utcnow
from jewelry_erp.core.celery import celery_app
from jewelry_erp.core.config import settings
from jewelry_erp.core.task_queue import TaskQueue
from jewelry_erp.dependencies.services import build_recurrence_engine, get_task_queue
from jewelry_erp.modules.recurring.engine import RecurrenceEngine

logger = logging.getLogger(__name__)

PROCESS_RECURRING_TASK = "recurring.process_recurring_invoices"


def cycle_lock_name(schedule_id: Optional[str] = None) -> str:
    if schedule_id:
        return f"process-recurring-invoice:{schedule_id}"
    return "process-recurring-invoices"


def run_recurring_cycle(
    engine: RecurrenceEngine,
    task_queue: TaskQueue,
    today: Optional[date] = None,
    schedule_id: Optional[str] = None,
    lock_ttl: float = 360
) -> dict:
    """Ejecutar un ciclo bajo el lock single-flight; si otro worker lo tiene, no hace nada."""
    today = today or utcnow().date()
    lock_name = cycle_lock_name(schedule_id)

    with task_queue.single_flight(lock_name, lock_ttl) as acquired:
        if not acquired:
            logger.warning(f"Recurring invoice job '{lock_name}' already running, skipping")
            return {"status": "skipped", "reason": "already running"}

        if schedule_id:
            summary = engine.run_single(schedule_id, today)
        else:
            summary = engine.run_cycle(today)

    return {
        "status": "success",
        "today": today.isoformat(),
        "fired": summary.fired,
        "skipped": summary.skipped,
        "failed": summary.failed,
    }


@celery_app.task(name=PROCESS_RECURRING_TASK, time_limit=settings.RECURRING_JOB_TIMEOUT)
def process_recurring_invoices(today: Optional[str] = None, schedule_id: Optional[str] = None):
    """
    Ciclo diario de facturación recurrente (lanzado por Celery beat).

    Acepta una fecha ISO y un schedule concreto para ejecuciones manuales.
    """
    task_queue = get_task_queue()
    return run_recurring_cycle(
        build_recurrence_engine(task_queue=task_queue),
        task_queue,
        today=date.fromisoformat(today) if today else None,
        schedule_id=schedule_id,
        lock_ttl=settings.RECURRING_JOB_TIMEOUT + settings.LOCK_TTL_SLACK_SECONDS
    )
