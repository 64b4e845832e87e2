"""
Persistencia de las operaciones masivas.

Reglas que hacen cumplir todas las implementaciones:

- El estado solo avanza: pending -> running -> completed | failed.
- ``error_message`` está informado si y solo si el estado es ``failed``.
- ``begin_attempt`` y ``advance_attempt`` son compare-and-swap sobre
  ``attempt``: dos entregas del mismo lote nunca reclaman intentos
  distintos a la vez y un intento viejo re-entregado se descarta.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging
import threading

from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError

from jewelry_erp.common.mixins import ensure_aware, utcnow
from jewelry_erp.core.exceptions import BatchNotFound, InvalidStatusTransition, RepositoryUnavailable
from jewelry_erp.modules.batches.models import ALLOWED_TRANSITIONS, BatchOperation, BatchStatus
from jewelry_erp.modules.batches.schemas import BatchFilters, BatchState, ItemResult

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"started_at", "completed_at", "error_message", "summary"}


def check_transition(state: BatchState, status: BatchStatus, fields: Dict[str, Any]) -> None:
    """Validar la transición y el invariante de error_message antes de escribir."""
    status = BatchStatus(status)
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable through a status change: {sorted(unknown)}")

    if status != state.status and status not in ALLOWED_TRANSITIONS[state.status]:
        raise InvalidStatusTransition(state.id, state.status.value, status.value)
    if status == state.status and state.status.is_terminal:
        raise InvalidStatusTransition(state.id, state.status.value, status.value)

    if status == BatchStatus.FAILED and not fields.get("error_message"):
        raise ValueError("A failed batch requires an error_message")
    if status != BatchStatus.FAILED and fields.get("error_message"):
        raise ValueError("error_message is only allowed on failed batches")


def progress_percentage(processed: int, total: int) -> Decimal:
    if not total:
        return Decimal("0")
    return (Decimal(processed) * 100 / Decimal(total)).quantize(Decimal("0.01"))


class BatchOperationStore(ABC):
    @abstractmethod
    def create(self, batch: BatchState) -> UUID:
        ...

    @abstractmethod
    def get(self, batch_id) -> BatchState:
        """Devuelve el lote o lanza BatchNotFound."""

    @abstractmethod
    def update_status(self, batch_id, status: BatchStatus, **fields) -> BatchState:
        ...

    @abstractmethod
    def begin_attempt(self, batch_id, attempt: int, now: datetime) -> bool:
        """
        Reclamar el intento ``attempt``.

        El intento 0 pasa el lote de pending a running y fija started_at. Un
        lote running se reclama si su intento almacenado es ``attempt``
        (reintento programado o re-entrega). En cualquier otro caso False.
        """

    @abstractmethod
    def advance_attempt(self, batch_id, from_attempt: int) -> bool:
        """Programar el siguiente intento: attempt pasa de ``from_attempt`` a ``from_attempt + 1``."""

    @abstractmethod
    def record_progress(self, batch_id, results: Dict[str, ItemResult], processed: int, total: int) -> BatchState:
        ...

    @abstractmethod
    def list_batches(self, filters: Optional[BatchFilters] = None, limit: int = 50, offset: int = 0) -> Tuple[List[BatchState], int]:
        ...

    @abstractmethod
    def find_running_started_before(self, cutoff: datetime) -> List[BatchState]:
        ...


class SqlBatchOperationStore(BatchOperationStore):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self):
        try:
            with self.session_factory.begin() as db:
                yield db
        except DBAPIError as e:
            logger.error(f"Batch operation storage unavailable: {e}")
            raise RepositoryUnavailable(str(e)) from e

    def _locked(self, db, batch_id) -> BatchOperation:
        batch = db.execute(
            select(BatchOperation)
            .where(BatchOperation.id == _as_uuid(batch_id))
            .with_for_update()
        ).scalar_one_or_none()
        if not batch:
            raise BatchNotFound(batch_id)
        return batch

    def create(self, batch: BatchState) -> UUID:
        with self._transaction() as db:
            row = BatchOperation(
                id=batch.id,
                kind=batch.kind,
                status=BatchStatus.PENDING,
                items=list(batch.items),
                options=dict(batch.options),
                attempt=0,
                processed_count=0,
                total_count=batch.total_count or len(batch.items),
                progress=Decimal("0"),
                results={},
                created_by=batch.created_by,
            )
            db.add(row)
        logger.info(f"Created batch operation {batch.id} ({batch.kind.value}, {len(batch.items)} items)")
        return batch.id

    def get(self, batch_id) -> BatchState:
        with self._transaction() as db:
            batch = db.get(BatchOperation, _as_uuid(batch_id))
            if not batch:
                raise BatchNotFound(batch_id)
            return self._to_state(batch)

    def update_status(self, batch_id, status, **fields) -> BatchState:
        with self._transaction() as db:
            batch = self._locked(db, batch_id)
            check_transition(self._to_state(batch), status, fields)
            batch.status = BatchStatus(status)
            for field, value in fields.items():
                setattr(batch, field, value)
            db.flush()
            return self._to_state(batch)

    def begin_attempt(self, batch_id, attempt, now) -> bool:
        with self._transaction() as db:
            batch = self._locked(db, batch_id)
            if batch.status == BatchStatus.PENDING and attempt == 0:
                batch.status = BatchStatus.RUNNING
                batch.started_at = now
                batch.attempt = 0
                return True
            return batch.status == BatchStatus.RUNNING and batch.attempt == attempt

    def advance_attempt(self, batch_id, from_attempt) -> bool:
        with self._transaction() as db:
            batch = self._locked(db, batch_id)
            if batch.status != BatchStatus.RUNNING or batch.attempt != from_attempt:
                return False
            batch.attempt = from_attempt + 1
            return True

    def record_progress(self, batch_id, results, processed, total) -> BatchState:
        with self._transaction() as db:
            batch = self._locked(db, batch_id)
            if batch.status != BatchStatus.RUNNING:
                raise InvalidStatusTransition(batch_id, batch.status.value, BatchStatus.RUNNING.value)
            merged = dict(batch.results or {})
            merged.update({key: result.model_dump(mode="json") for key, result in results.items()})
            batch.results = merged
            batch.processed_count = processed
            batch.total_count = total
            batch.progress = progress_percentage(processed, total)
            db.flush()
            return self._to_state(batch)

    def list_batches(self, filters=None, limit=50, offset=0):
        filters = filters or BatchFilters()
        query = select(BatchOperation)
        if filters.kind:
            query = query.where(BatchOperation.kind == filters.kind)
        if filters.status:
            query = query.where(BatchOperation.status == filters.status)
        if filters.date_from:
            query = query.where(BatchOperation.created_at >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            query = query.where(BatchOperation.created_at <= datetime.combine(filters.date_to, time.max))

        with self._transaction() as db:
            total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            rows = db.execute(
                query.order_by(BatchOperation.created_at.desc(), BatchOperation.id)
                .offset(offset)
                .limit(limit)
            ).scalars().all()
            return [self._to_state(row) for row in rows], total

    def find_running_started_before(self, cutoff) -> List[BatchState]:
        with self._transaction() as db:
            rows = db.execute(
                select(BatchOperation)
                .where(
                    BatchOperation.status == BatchStatus.RUNNING,
                    BatchOperation.started_at < cutoff
                )
                .order_by(BatchOperation.started_at)
            ).scalars().all()
            return [self._to_state(row) for row in rows]

    @staticmethod
    def _to_state(batch: BatchOperation) -> BatchState:
        state = BatchState.model_validate(batch)
        for field in ("started_at", "completed_at", "created_at", "updated_at"):
            setattr(state, field, ensure_aware(getattr(state, field)))
        return state


class InMemoryBatchOperationStore(BatchOperationStore):
    """Store en memoria para workers de un solo proceso y para tests."""

    def __init__(self):
        self._batches: Dict[UUID, BatchState] = {}
        self._lock = threading.Lock()

    def _current(self, batch_id) -> BatchState:
        state = self._batches.get(_as_uuid(batch_id))
        if state is None:
            raise BatchNotFound(batch_id)
        return state

    def _save(self, state: BatchState, **changes) -> BatchState:
        changes["updated_at"] = utcnow()
        updated = state.model_copy(update=changes, deep=True)
        self._batches[state.id] = updated
        return updated.model_copy(deep=True)

    def create(self, batch: BatchState) -> UUID:
        now = utcnow()
        with self._lock:
            self._batches[batch.id] = batch.model_copy(update={
                "status": BatchStatus.PENDING,
                "attempt": 0,
                "total_count": batch.total_count or len(batch.items),
                "created_at": batch.created_at or now,
                "updated_at": now,
            }, deep=True)
        return batch.id

    def get(self, batch_id) -> BatchState:
        with self._lock:
            return self._current(batch_id).model_copy(deep=True)

    def update_status(self, batch_id, status, **fields) -> BatchState:
        with self._lock:
            state = self._current(batch_id)
            check_transition(state, status, fields)
            return self._save(state, status=BatchStatus(status), **fields)

    def begin_attempt(self, batch_id, attempt, now) -> bool:
        with self._lock:
            state = self._current(batch_id)
            if state.status == BatchStatus.PENDING and attempt == 0:
                self._save(state, status=BatchStatus.RUNNING, started_at=now, attempt=0)
                return True
            return state.status == BatchStatus.RUNNING and state.attempt == attempt

    def advance_attempt(self, batch_id, from_attempt) -> bool:
        with self._lock:
            state = self._current(batch_id)
            if state.status != BatchStatus.RUNNING or state.attempt != from_attempt:
                return False
            self._save(state, attempt=from_attempt + 1)
            return True

    def record_progress(self, batch_id, results, processed, total) -> BatchState:
        with self._lock:
            state = self._current(batch_id)
            if state.status != BatchStatus.RUNNING:
                raise InvalidStatusTransition(batch_id, state.status.value, BatchStatus.RUNNING.value)
            merged = dict(state.results)
            merged.update(results)
            return self._save(
                state,
                results=merged,
                processed_count=processed,
                total_count=total,
                progress=progress_percentage(processed, total)
            )

    def list_batches(self, filters=None, limit=50, offset=0):
        filters = filters or BatchFilters()
        with self._lock:
            batches = [b.model_copy(deep=True) for b in self._batches.values()]

        if filters.kind:
            batches = [b for b in batches if b.kind == filters.kind]
        if filters.status:
            batches = [b for b in batches if b.status == filters.status]
        if filters.date_from:
            batches = [b for b in batches if b.created_at.date() >= filters.date_from]
        if filters.date_to:
            batches = [b for b in batches if b.created_at.date() <= filters.date_to]

        batches.sort(key=lambda b: b.created_at, reverse=True)
        return batches[offset:offset + limit], len(batches)

    def find_running_started_before(self, cutoff) -> List[BatchState]:
        with self._lock:
            running = [
                b.model_copy(deep=True) for b in self._batches.values()
                if b.status == BatchStatus.RUNNING and b.started_at is not None and b.started_at < cutoff
            ]
        return sorted(running, key=lambda b: b.started_at)


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
