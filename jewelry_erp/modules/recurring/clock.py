"""
Calendario de la facturación recurrente.

Funciones puras: dada la frecuencia, el intervalo y la fecha vigente
calculan la siguiente fecha de emisión. Los meses son de calendario; el día
se ajusta al último día del mes más corto (31-ene + 1 mes = 28/29-feb).
"""
from datetime import date
import enum

from dateutil.relativedelta import relativedelta


class Frequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


def next_date(current: date, frequency, interval: int = 1) -> date:
    frequency = Frequency(frequency)
    if interval < 1:
        raise ValueError(f"interval must be a positive integer, got {interval}")

    if frequency is Frequency.DAILY:
        return current + relativedelta(days=interval)
    if frequency is Frequency.WEEKLY:
        return current + relativedelta(weeks=interval)
    if frequency is Frequency.MONTHLY:
        return current + relativedelta(months=interval)
    if frequency is Frequency.QUARTERLY:
        return current + relativedelta(months=interval * 3)
    return current + relativedelta(years=interval)


def is_eligible(schedule, today: date) -> bool:
    """Condiciones para emitir hoy la factura de un schedule."""
    if not schedule.is_active:
        return False
    if schedule.start_date and schedule.start_date > today:
        return False
    if schedule.next_fire_date > today:
        return False
    if schedule.end_date and schedule.end_date < today:
        return False
    if schedule.max_occurrences is not None and schedule.occurrences_generated >= schedule.max_occurrences:
        return False
    return True


def idempotency_key(schedule_id, fire_date: date) -> str:
    return f"recurring:{schedule_id}:{fire_date.isoformat()}"
