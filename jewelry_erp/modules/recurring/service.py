from fastapi import HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import or_, func, update
from typing import Optional
from uuid import UUID
from datetime import date, timedelta
import logging

from jewelry_erp.common.mixins import utcnow
from jewelry_erp.modules.customers.models import Customer
from jewelry_erp.modules.recurring.clock import next_date
from jewelry_erp.modules.recurring.models import RecurringSchedule
from jewelry_erp.modules.recurring.schemas import (
    ScheduleCreate, ScheduleUpdate, ScheduleFilters, ScheduleStats
)

logger = logging.getLogger(__name__)


class RecurringScheduleService:
    """
    Gestión de la configuración de facturación recurrente.

    Los contadores los avanza solo el motor de recurrencia. Las ediciones que
    mueven el cursor se escriben de forma condicional para no pisar un avance
    del motor.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_schedule(self, data: ScheduleCreate) -> RecurringSchedule:
        """Crear un schedule; por defecto la primera emisión es start_date + un periodo"""
        customer = self.db.get(Customer, data.customer_id)
        if not customer:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="El cliente especificado no existe"
            )

        next_fire_date = data.next_fire_date or next_date(data.start_date, data.frequency, data.interval)

        schedule = RecurringSchedule(
            customer_id=data.customer_id,
            name=data.name,
            description=data.description,
            language=data.language,
            amount=data.amount,
            frequency=data.frequency,
            interval=data.interval,
            start_date=data.start_date,
            end_date=data.end_date,
            next_fire_date=next_fire_date,
            max_occurrences=data.max_occurrences,
            occurrences_generated=0,
            is_active=data.is_active,
            payload_template=data.payload_template,
        )
        self.db.add(schedule)
        self.db.commit()
        self.db.refresh(schedule)

        logger.info(f"Created recurring schedule {schedule.id} ({schedule.frequency.value} x{schedule.interval})")
        return schedule

    def get_schedule(self, schedule_id: UUID) -> RecurringSchedule:
        schedule = self.db.get(RecurringSchedule, schedule_id)
        if not schedule:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Schedule recurrente no encontrado"
            )
        return schedule

    def list_schedules(self, filters: ScheduleFilters, limit: int = 50, offset: int = 0) -> dict:
        """Listar schedules con filtros"""
        query = self.db.query(RecurringSchedule)

        if filters.customer_id:
            query = query.filter(RecurringSchedule.customer_id == filters.customer_id)

        if filters.active is not None:
            query = query.filter(RecurringSchedule.is_active.is_(filters.active))

        if filters.frequency:
            query = query.filter(RecurringSchedule.frequency == filters.frequency)

        if filters.due_within_days is not None:
            horizon = utcnow().date() + timedelta(days=filters.due_within_days)
            query = query.filter(RecurringSchedule.next_fire_date <= horizon)

        if filters.search:
            query = query.filter(or_(
                RecurringSchedule.name.ilike(f"%{filters.search}%"),
                RecurringSchedule.description.ilike(f"%{filters.search}%")
            ))

        total = query.count()
        schedules = (
            query.order_by(RecurringSchedule.next_fire_date, RecurringSchedule.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {"schedules": schedules, "total": total, "limit": limit, "offset": offset}

    def update_schedule(self, schedule_id: UUID, data: ScheduleUpdate) -> RecurringSchedule:
        """
        Actualizar un schedule; si cambia la cadencia se recalcula next_fire_date
        desde la fecha almacenada.

        max_occurrences no puede quedar por debajo de las facturas ya emitidas;
        si queda igual, el schedule se desactiva.
        """
        schedule = self.get_schedule(schedule_id)

        values = {}
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None and field in ("name", "language", "frequency", "interval", "payload_template"):
                continue
            values[field] = value

        if "frequency" in values or "interval" in values:
            values["next_fire_date"] = next_date(
                schedule.next_fire_date,
                values.get("frequency", schedule.frequency),
                values.get("interval", schedule.interval)
            )

        end_date = values.get("end_date", schedule.end_date)
        if end_date and schedule.start_date and end_date < schedule.start_date:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="end_date no puede ser anterior a start_date"
            )

        max_occurrences = values.get("max_occurrences")
        if max_occurrences is not None:
            if max_occurrences < schedule.occurrences_generated:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"max_occurrences no puede ser menor que las facturas ya generadas ({schedule.occurrences_generated})"
                )
            if max_occurrences == schedule.occurrences_generated:
                values["is_active"] = False

        if values:
            self._write_if_unchanged(schedule, values)
        return schedule

    def pause_schedule(self, schedule_id: UUID) -> RecurringSchedule:
        schedule = self.get_schedule(schedule_id)
        schedule.is_active = False
        self.db.commit()
        self.db.refresh(schedule)
        logger.info(f"Paused recurring schedule {schedule.id}")
        return schedule

    def resume_schedule(self, schedule_id: UUID, today: Optional[date] = None) -> RecurringSchedule:
        """Reanudar; si la próxima fecha ya pasó se recalcula desde hoy"""
        today = today or utcnow().date()
        schedule = self.get_schedule(schedule_id)

        if schedule.max_occurrences is not None and schedule.occurrences_generated >= schedule.max_occurrences:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="El schedule ya alcanzó el máximo de facturas"
            )

        values = {"is_active": True}
        if schedule.next_fire_date < today:
            values["next_fire_date"] = next_date(today, schedule.frequency, schedule.interval)

        self._write_if_unchanged(schedule, values)
        logger.info(f"Resumed recurring schedule {schedule.id}, next fire date {schedule.next_fire_date}")
        return schedule

    def deactivate_schedule(self, schedule_id: UUID) -> RecurringSchedule:
        """Los schedules no se eliminan: las facturas generadas los referencian"""
        return self.pause_schedule(schedule_id)

    def _write_if_unchanged(self, schedule: RecurringSchedule, values: dict) -> None:
        """
        Escritura condicional sobre el cursor y el contador leídos.

        Si el motor avanzó el schedule entre la lectura y la escritura, el
        valor calculado ya no es válido: se responde 409 y el cliente reintenta.
        """
        stmt = (
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule.id,
                RecurringSchedule.next_fire_date == schedule.next_fire_date,
                RecurringSchedule.occurrences_generated == schedule.occurrences_generated
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            self.db.rollback()
            logger.warning(f"Recurring schedule {schedule.id} changed while being edited")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="El schedule fue modificado por el ciclo de facturación; vuelva a intentarlo"
            )
        self.db.commit()
        self.db.refresh(schedule)

    def get_upcoming(self, days: int = 7, today: Optional[date] = None) -> list:
        today = today or utcnow().date()
        return (
            self.db.query(RecurringSchedule)
            .filter(
                RecurringSchedule.is_active.is_(True),
                RecurringSchedule.next_fire_date >= today,
                RecurringSchedule.next_fire_date <= today + timedelta(days=days)
            )
            .order_by(RecurringSchedule.next_fire_date)
            .all()
        )

    def get_stats(self, today: Optional[date] = None) -> ScheduleStats:
        today = today or utcnow().date()
        active = self.db.query(RecurringSchedule).filter(RecurringSchedule.is_active.is_(True))

        return ScheduleStats(
            total_active=active.count(),
            total_paused=self.db.query(RecurringSchedule).filter(RecurringSchedule.is_active.is_(False)).count(),
            due_today=active.filter(RecurringSchedule.next_fire_date == today).count(),
            due_this_week=active.filter(
                RecurringSchedule.next_fire_date >= today,
                RecurringSchedule.next_fire_date <= today + timedelta(days=7)
            ).count(),
            total_generated=self.db.query(
                func.coalesce(func.sum(RecurringSchedule.occurrences_generated), 0)
            ).scalar() or 0,
        )
