"""
Módulo de Facturación Recurrente

Emite automáticamente las facturas de los clientes con cobro periódico.

- clock.py: cálculo de la siguiente fecha de emisión
- repository.py: estado de los schedules con avance compare-and-swap
- engine.py: ciclo diario (generación idempotente, avance, notificación)
- service.py / router.py: configuración de los schedules vía API
- tasks.py: tarea de Celery con lock single-flight
"""

from .clock import Frequency, next_date, is_eligible, idempotency_key
from .models import RecurringSchedule
from .schemas import ScheduleState, CycleSummary, CycleOutcome, CycleOutcomeType
from .repository import RecurrenceRepository, SqlRecurrenceRepository, InMemoryRecurrenceRepository
from .engine import RecurrenceEngine, RecurrencePolicy

__all__ = [
    "Frequency", "next_date", "is_eligible", "idempotency_key",
    "RecurringSchedule",
    "ScheduleState", "CycleSummary", "CycleOutcome", "CycleOutcomeType",
    "RecurrenceRepository", "SqlRecurrenceRepository", "InMemoryRecurrenceRepository",
    "RecurrenceEngine", "RecurrencePolicy"
]
