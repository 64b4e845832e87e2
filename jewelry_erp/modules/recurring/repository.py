"""
Persistencia del estado de los schedules recurrentes.

``advance`` es un compare-and-swap sobre ``next_fire_date``: incrementa el
contador, mueve el cursor, registra ``last_fired_at`` y desactiva el
schedule al alcanzar ``max_occurrences`` en una sola actualización. Si otro
worker ya avanzó el schedule devuelve False. Un schedule pausado mientras se
generaba su factura sigue avanzando: la factura ya existe.

``record_occurrence`` cuenta una factura sin mover el cursor, condicionado al
contador leído; el motor lo usa cuando una edición movió el cursor a mitad
de la generación.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, List, Optional
from uuid import UUID
import logging
import threading

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.exc import DBAPIError

from jewelry_erp.common.mixins import ensure_aware
from jewelry_erp.core.exceptions import RepositoryUnavailable
from jewelry_erp.modules.recurring.clock import is_eligible
from jewelry_erp.modules.recurring.models import RecurringSchedule
from jewelry_erp.modules.recurring.schemas import ScheduleState

logger = logging.getLogger(__name__)


class RecurrenceRepository(ABC):
    @abstractmethod
    def find_due(self, today: date) -> List[ScheduleState]:
        ...

    @abstractmethod
    def get(self, schedule_id) -> Optional[ScheduleState]:
        ...

    @abstractmethod
    def advance(self, schedule_id, expected_next_fire_date: date, new_next_fire_date: date, fired_at: datetime) -> bool:
        ...

    @abstractmethod
    def record_occurrence(self, schedule_id, expected_occurrences: int, fired_at: datetime) -> bool:
        ...

    @abstractmethod
    def deactivate(self, schedule_id) -> bool:
        ...


class SqlRecurrenceRepository(RecurrenceRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self):
        try:
            with self.session_factory.begin() as db:
                yield db
        except DBAPIError as e:
            logger.error(f"Recurring schedule storage unavailable: {e}")
            raise RepositoryUnavailable(str(e)) from e

    def find_due(self, today: date) -> List[ScheduleState]:
        query = (
            select(RecurringSchedule)
            .where(
                RecurringSchedule.is_active.is_(True),
                RecurringSchedule.next_fire_date <= today,
                or_(RecurringSchedule.start_date.is_(None), RecurringSchedule.start_date <= today),
                or_(RecurringSchedule.end_date.is_(None), RecurringSchedule.end_date >= today),
                or_(
                    RecurringSchedule.max_occurrences.is_(None),
                    RecurringSchedule.occurrences_generated < RecurringSchedule.max_occurrences
                )
            )
            .order_by(RecurringSchedule.next_fire_date, RecurringSchedule.id)
        )
        with self._transaction() as db:
            schedules = db.execute(query).scalars().all()
            return [self._to_state(s) for s in schedules]

    def get(self, schedule_id) -> Optional[ScheduleState]:
        with self._transaction() as db:
            schedule = db.get(RecurringSchedule, _as_uuid(schedule_id))
            return self._to_state(schedule) if schedule else None

    def advance(self, schedule_id, expected_next_fire_date, new_next_fire_date, fired_at) -> bool:
        stmt = (
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == _as_uuid(schedule_id),
                RecurringSchedule.next_fire_date == expected_next_fire_date,
                _below_cap()
            )
            .values(next_fire_date=new_next_fire_date, **_occurrence_values(fired_at))
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as db:
            result = db.execute(stmt)
            return result.rowcount == 1

    def record_occurrence(self, schedule_id, expected_occurrences, fired_at) -> bool:
        stmt = (
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == _as_uuid(schedule_id),
                RecurringSchedule.occurrences_generated == expected_occurrences,
                _below_cap()
            )
            .values(**_occurrence_values(fired_at))
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as db:
            return db.execute(stmt).rowcount == 1

    def deactivate(self, schedule_id) -> bool:
        stmt = (
            update(RecurringSchedule)
            .where(RecurringSchedule.id == _as_uuid(schedule_id))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as db:
            return db.execute(stmt).rowcount == 1

    @staticmethod
    def _to_state(schedule: RecurringSchedule) -> ScheduleState:
        state = ScheduleState.model_validate(schedule)
        state.last_fired_at = ensure_aware(state.last_fired_at)
        return state


class InMemoryRecurrenceRepository(RecurrenceRepository):
    """Repositorio en memoria para workers de un solo proceso y para tests."""

    def __init__(self):
        self._schedules: Dict[UUID, ScheduleState] = {}
        self._lock = threading.Lock()

    def add(self, state: ScheduleState) -> ScheduleState:
        with self._lock:
            self._schedules[state.id] = state.model_copy(deep=True)
        return state

    def find_due(self, today: date) -> List[ScheduleState]:
        with self._lock:
            due = [s.model_copy(deep=True) for s in self._schedules.values() if is_eligible(s, today)]
        return sorted(due, key=lambda s: (s.next_fire_date, str(s.id)))

    def get(self, schedule_id) -> Optional[ScheduleState]:
        with self._lock:
            state = self._schedules.get(_as_uuid(schedule_id))
            return state.model_copy(deep=True) if state else None

    def advance(self, schedule_id, expected_next_fire_date, new_next_fire_date, fired_at) -> bool:
        with self._lock:
            state = self._schedules.get(_as_uuid(schedule_id))
            if state is None:
                return False
            if state.next_fire_date != expected_next_fire_date:
                return False
            if state.max_occurrences is not None and state.occurrences_generated >= state.max_occurrences:
                return False

            self._count(state, fired_at, next_fire_date=new_next_fire_date)
            return True

    def record_occurrence(self, schedule_id, expected_occurrences, fired_at) -> bool:
        with self._lock:
            state = self._schedules.get(_as_uuid(schedule_id))
            if state is None or state.occurrences_generated != expected_occurrences:
                return False
            if state.max_occurrences is not None and state.occurrences_generated >= state.max_occurrences:
                return False
            self._count(state, fired_at)
            return True

    def _count(self, state: ScheduleState, fired_at: datetime, **changes) -> None:
        occurrences = state.occurrences_generated + 1
        reached = state.max_occurrences is not None and occurrences >= state.max_occurrences
        changes.update({
            "occurrences_generated": occurrences,
            "last_fired_at": fired_at,
            "is_active": False if reached else state.is_active,
        })
        self._schedules[state.id] = state.model_copy(update=changes)

    def deactivate(self, schedule_id) -> bool:
        with self._lock:
            state = self._schedules.get(_as_uuid(schedule_id))
            if state is None:
                return False
            self._schedules[state.id] = state.model_copy(update={"is_active": False})
            return True


def _below_cap():
    return or_(
        RecurringSchedule.max_occurrences.is_(None),
        RecurringSchedule.occurrences_generated < RecurringSchedule.max_occurrences
    )


def _occurrence_values(fired_at: datetime) -> dict:
    """Incrementa el contador y desactiva al alcanzar max_occurrences"""
    reaches_cap = and_(
        RecurringSchedule.max_occurrences.isnot(None),
        RecurringSchedule.occurrences_generated + 1 >= RecurringSchedule.max_occurrences
    )
    return {
        "occurrences_generated": RecurringSchedule.occurrences_generated + 1,
        "last_fired_at": fired_at,
        "is_active": case((reaches_cap, False), else_=RecurringSchedule.is_active),
    }


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
