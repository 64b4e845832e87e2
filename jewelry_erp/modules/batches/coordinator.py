"""
Coordinador de operaciones masivas.

Estados: pending -> running -> completed | failed. Cada intento se reclama
en el store antes de despachar; un intento fallido se re-encola en la cola
de tareas con el retraso de la política (30 s, 60 s, 120 s) en lugar de
reintentarse en proceso, de modo que la caída de un worker no pierde el
reintento. El lote se abandona (failed) al agotar los reintentos (primer
intento más max_retries, es decir 4 despachos por defecto) o al pasar el
plazo desde started_at, lo que ocurra primero.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging

from pydantic import BaseModel, Field

from jewelry_erp.common.mixins import utcnow
from jewelry_erp.core.exceptions import (
    InvalidStatusTransition, RepositoryUnavailable, UnsupportedBatchKind
)
from jewelry_erp.core.task_queue import TaskQueue
from jewelry_erp.modules.batches.handlers import BatchHandler
from jewelry_erp.modules.batches.models import BatchKind, BatchStatus
from jewelry_erp.modules.batches.schemas import BatchFilters, BatchState, ItemStatus
from jewelry_erp.modules.batches.store import BatchOperationStore

logger = logging.getLogger(__name__)

PROCESS_BATCH_TASK = "batches.process_batch_operation"


class BatchPolicy(BaseModel):
    """
    max_retries cuenta los reintentos posteriores al primer intento: con 3 hay
    hasta 4 despachos (intentos 0 a 3) y el lote falla cuando el intento 3
    falla. retry_delays[i] es la espera antes del intento i + 1.
    """
    retry_delays: List[float] = Field(default_factory=lambda: [30, 60, 120])
    max_retries: int = 3
    deadline_seconds: float = 2 * 60 * 60
    collaborator_timeout: Optional[float] = 300
    task_name: str = PROCESS_BATCH_TASK
    queue: Optional[str] = None

    def delay_for(self, attempt: int) -> float:
        """Retraso antes del intento ``attempt + 1``."""
        if not self.retry_delays:
            return 0
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]


class BatchOperationCoordinator:
    def __init__(
        self,
        store: BatchOperationStore,
        task_queue: TaskQueue,
        handlers: Dict[BatchKind, BatchHandler],
        policy: Optional[BatchPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.task_queue = task_queue
        self.handlers = dict(handlers)
        self.policy = policy or BatchPolicy()
        self.clock = clock

    def submit(
        self,
        kind: BatchKind,
        items: List[Any],
        options: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None
    ) -> BatchState:
        """Crear el lote en pending y encolar su primer intento."""
        kind = BatchKind(kind)
        if kind not in self.handlers:
            raise UnsupportedBatchKind(f"No handler registered for batch kind '{kind.value}'")
        if not items:
            raise ValueError("A batch needs at least one item")

        batch = BatchState(
            id=uuid4(),
            kind=kind,
            items=[str(item) for item in items],
            options=options or {},
            total_count=len(items),
            created_by=created_by
        )
        self.store.create(batch)
        self._dispatch(batch.id, attempt=0)
        logger.info(f"Submitted batch operation {batch.id} ({kind.value}, {len(items)} items)")
        return self.store.get(batch.id)

    def execute(self, batch_id, attempt: int = 0) -> BatchState:
        """
        Ejecutar el intento ``attempt`` del lote.

        Tolera re-entregas: un lote terminal no se toca, un intento viejo se
        descarta y una segunda entrega del intento actual lo reanuda
        (los ítems ya completados no se vuelven a procesar).
        """
        batch = self.store.get(batch_id)
        if batch.status.is_terminal:
            logger.info(f"Batch {batch.id} already {batch.status.value}, nothing to do")
            return batch

        now = self.clock()
        if batch.status == BatchStatus.RUNNING and self._past_deadline(batch, now):
            return self._fail(batch, self._deadline_message())

        if not self.store.begin_attempt(batch.id, attempt, now):
            logger.warning(f"Ignoring stale attempt {attempt} for batch {batch.id}")
            return self.store.get(batch.id)

        batch = self.store.get(batch.id)
        handler = self.handlers.get(batch.kind)
        if handler is None:
            return self._fail(batch, f"No handler registered for batch kind '{batch.kind.value}'")

        logger.info(f"Batch {batch.id} attempt {attempt} started ({batch.kind.value}, {len(batch.items)} items)")
        try:
            handler.run(batch, attempt, self.store, timeout=self.policy.collaborator_timeout)
        except RepositoryUnavailable:
            raise
        except InvalidStatusTransition as e:
            # El lote se cerró mientras este intento corría (plazo u operador)
            logger.warning(f"Batch {batch.id} changed state during attempt {attempt}: {e}")
            return self.store.get(batch.id)
        except Exception as e:
            return self._handle_failure(batch.id, attempt, e)

        try:
            completed = self.store.update_status(
                batch.id,
                BatchStatus.COMPLETED,
                completed_at=self.clock(),
                summary=self._summary(self.store.get(batch.id), attempt)
            )
        except InvalidStatusTransition as e:
            logger.warning(f"Batch {batch.id} could not be completed: {e}")
            return self.store.get(batch.id)

        logger.info(f"Batch {batch.id} completed after {attempt + 1} attempt(s)")
        return completed

    def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Marcar como failed los lotes running que superaron el plazo."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.policy.deadline_seconds)
        expired = 0
        for batch in self.store.find_running_started_before(cutoff):
            try:
                self._fail(batch, self._deadline_message())
                expired += 1
            except InvalidStatusTransition:
                logger.info(f"Batch {batch.id} finished before it could be expired")
        if expired:
            logger.warning(f"Expired {expired} overdue batch operation(s)")
        return expired

    def mark_failed(self, batch_id, reason: str) -> BatchState:
        """Cierre manual por un operador; el trabajo en curso no se interrumpe."""
        batch = self.store.get(batch_id)
        if batch.status.is_terminal:
            raise InvalidStatusTransition(batch.id, batch.status.value, BatchStatus.FAILED.value)
        return self._fail(batch, f"Marked as failed by operator: {reason}")

    def get_status(self, batch_id) -> BatchState:
        return self.store.get(batch_id)

    def list_batches(self, filters: Optional[BatchFilters] = None, limit: int = 50, offset: int = 0):
        return self.store.list_batches(filters, limit, offset)

    def _handle_failure(self, batch_id, attempt: int, error: Exception) -> BatchState:
        message = str(error) or error.__class__.__name__
        batch = self.store.get(batch_id)

        if attempt >= self.policy.max_retries:
            return self._fail(batch, f"Failed after {attempt + 1} attempts: {message}")

        delay = self.policy.delay_for(attempt)
        if self._past_deadline(batch, self.clock() + timedelta(seconds=delay)):
            return self._fail(batch, f"{self._deadline_message()}: {message}")

        if not self.store.advance_attempt(batch.id, attempt):
            logger.warning(f"Batch {batch.id} attempt {attempt} already superseded, not retrying")
            return self.store.get(batch.id)

        self._dispatch(batch.id, attempt=attempt + 1, countdown=delay)
        logger.warning(f"Batch {batch.id} attempt {attempt} failed: {message}. Retrying in {delay:g}s")
        return self.store.get(batch.id)

    def _fail(self, batch: BatchState, reason: str) -> BatchState:
        logger.error(f"Batch {batch.id} failed: {reason}")
        return self.store.update_status(
            batch.id,
            BatchStatus.FAILED,
            error_message=reason,
            completed_at=self.clock(),
            summary=self._summary(batch, batch.attempt)
        )

    def _dispatch(self, batch_id, attempt: int, countdown: float = 0) -> str:
        return self.task_queue.enqueue(
            self.policy.task_name,
            kwargs={"batch_id": str(batch_id), "attempt": attempt},
            countdown=countdown,
            queue=self.policy.queue
        )

    def _past_deadline(self, batch: BatchState, moment: datetime) -> bool:
        if batch.started_at is None:
            return False
        return moment >= batch.started_at + timedelta(seconds=self.policy.deadline_seconds)

    def _deadline_message(self) -> str:
        return f"Deadline of {self.policy.deadline_seconds:g}s since start exceeded"

    @staticmethod
    def _summary(batch: BatchState, attempt: int) -> Dict[str, Any]:
        succeeded = len(batch.completed_items())
        failed = sum(1 for result in batch.results.values() if result.status == ItemStatus.FAILED)
        return {
            "total": len(batch.items),
            "succeeded": succeeded,
            "failed": failed,
            "attempts": attempt + 1,
        }
