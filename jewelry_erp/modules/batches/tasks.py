"""
Tareas de Celery de las operaciones masivas.
"""
import logging

from jewelry_erp.core.celery import celery_app
from jewelry_erp.core.config import settings
from jewelry_erp.core.task_queue import TaskQueue
from jewelry_erp.dependencies.services import build_batch_coordinator, get_task_queue
from jewelry_erp.modules.batches.coordinator import PROCESS_BATCH_TASK, BatchOperationCoordinator

logger = logging.getLogger(__name__)

EXPIRE_OVERDUE_TASK = "batches.expire_overdue_batches"


def batch_lock_name(batch_id: str) -> str:
    return f"batch-operation:{batch_id}"


def run_batch_operation(
    coordinator: BatchOperationCoordinator,
    task_queue: TaskQueue,
    batch_id: str,
    attempt: int = 0,
    lock_ttl: float = 1860
) -> dict:
    """
    Ejecutar un intento bajo el lock del lote.

    Si otro worker tiene el lock la entrega se re-encola con el primer
    retraso de la política; el store descarta después los intentos viejos.
    """
    with task_queue.single_flight(batch_lock_name(batch_id), lock_ttl) as acquired:
        if not acquired:
            delay = coordinator.policy.delay_for(0)
            logger.warning(f"Batch {batch_id} is being processed by another worker, deferring attempt {attempt} by {delay:g}s")
            task_queue.enqueue(
                coordinator.policy.task_name,
                kwargs={"batch_id": str(batch_id), "attempt": attempt},
                countdown=delay,
                queue=coordinator.policy.queue
            )
            return {"status": "deferred", "batch_id": str(batch_id), "attempt": attempt}

        batch = coordinator.execute(batch_id, attempt)

    return {
        "status": batch.status.value,
        "batch_id": str(batch.id),
        "attempt": batch.attempt,
        "error": batch.error_message,
    }


@celery_app.task(name=PROCESS_BATCH_TASK, time_limit=settings.BATCH_JOB_TIMEOUT)
def process_batch_operation(batch_id: str, attempt: int = 0):
    task_queue = get_task_queue()
    return run_batch_operation(
        build_batch_coordinator(task_queue=task_queue),
        task_queue,
        batch_id,
        attempt,
        lock_ttl=settings.BATCH_JOB_TIMEOUT + settings.LOCK_TTL_SLACK_SECONDS
    )


@celery_app.task(name=EXPIRE_OVERDUE_TASK)
def expire_overdue_batches():
    """Barrido periódico: cierra los lotes running fuera de plazo (reintentos perdidos)."""
    expired = build_batch_coordinator(task_queue=get_task_queue()).expire_overdue()
    return {"status": "success", "expired": expired}
