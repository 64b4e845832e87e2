from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from jewelry_erp.core.task_queue import TaskQueue
from jewelry_erp.database.database import get_db
from jewelry_erp.dependencies.services import get_task_queue
from jewelry_erp.modules.recurring.clock import Frequency
from jewelry_erp.modules.recurring.service import RecurringScheduleService
from jewelry_erp.modules.recurring.schemas import (
    ScheduleCreate, ScheduleUpdate, ScheduleOut, ScheduleList, ScheduleFilters,
    ScheduleStats, RunCycleRequest, RunCycleResponse
)
from jewelry_erp.modules.recurring.tasks import PROCESS_RECURRING_TASK

router = APIRouter(prefix="/recurring-schedules", tags=["Recurring Schedules"])


@router.post("/", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
def create_schedule(
    schedule_data: ScheduleCreate,
    db: Session = Depends(get_db)
):
    """
    Crear un schedule de facturación recurrente

    Si no se indica next_fire_date, la primera factura se emite un periodo
    después de start_date.
    """
    service = RecurringScheduleService(db)
    return service.create_schedule(schedule_data)


@router.get("/", response_model=ScheduleList)
def list_schedules(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    customer_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    active: Optional[bool] = Query(None, description="Solo activos o solo pausados"),
    frequency: Optional[Frequency] = Query(None, description="Frecuencia"),
    due_within_days: Optional[int] = Query(None, ge=0, description="Vencen en los próximos N días"),
    search: Optional[str] = Query(None, description="Buscar por nombre o descripción"),
    db: Session = Depends(get_db)
):
    service = RecurringScheduleService(db)
    filters = ScheduleFilters(
        customer_id=customer_id,
        active=active,
        frequency=frequency,
        due_within_days=due_within_days,
        search=search
    )
    return service.list_schedules(filters, limit, offset)


@router.get("/upcoming", response_model=List[ScheduleOut])
def upcoming_schedules(
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db)
):
    """Schedules activos que emiten factura en los próximos días"""
    service = RecurringScheduleService(db)
    return service.get_upcoming(days)


@router.get("/stats", response_model=ScheduleStats)
def schedule_stats(db: Session = Depends(get_db)):
    service = RecurringScheduleService(db)
    return service.get_stats()


@router.post("/run", response_model=RunCycleResponse, status_code=status.HTTP_202_ACCEPTED)
def run_cycle(
    request: RunCycleRequest,
    task_queue: TaskQueue = Depends(get_task_queue)
):
    """
    Encolar un ciclo de facturación recurrente

    Sin schedule_id se procesan todos los schedules vencidos.
    """
    kwargs = {}
    if request.today:
        kwargs["today"] = request.today.isoformat()
    if request.schedule_id:
        kwargs["schedule_id"] = str(request.schedule_id)
    task_id = task_queue.enqueue(PROCESS_RECURRING_TASK, kwargs=kwargs)
    return RunCycleResponse(task_id=task_id, task_name=PROCESS_RECURRING_TASK)


@router.get("/{schedule_id}", response_model=ScheduleOut)
def get_schedule(
    schedule_id: UUID,
    db: Session = Depends(get_db)
):
    service = RecurringScheduleService(db)
    return service.get_schedule(schedule_id)


@router.patch("/{schedule_id}", response_model=ScheduleOut)
def update_schedule(
    schedule_id: UUID,
    schedule_update: ScheduleUpdate,
    db: Session = Depends(get_db)
):
    """
    Actualizar un schedule

    Cambiar la frecuencia o el intervalo recalcula la próxima fecha.
    Responde 409 si el ciclo de facturación avanzó el schedule mientras tanto
    y 422 si max_occurrences queda por debajo de las facturas ya generadas.
    """
    service = RecurringScheduleService(db)
    return service.update_schedule(schedule_id, schedule_update)


@router.post("/{schedule_id}/pause", response_model=ScheduleOut)
def pause_schedule(
    schedule_id: UUID,
    db: Session = Depends(get_db)
):
    service = RecurringScheduleService(db)
    return service.pause_schedule(schedule_id)


@router.post("/{schedule_id}/resume", response_model=ScheduleOut)
def resume_schedule(
    schedule_id: UUID,
    db: Session = Depends(get_db)
):
    service = RecurringScheduleService(db)
    return service.resume_schedule(schedule_id)


@router.delete("/{schedule_id}", response_model=ScheduleOut)
def delete_schedule(
    schedule_id: UUID,
    db: Session = Depends(get_db)
):
    """Desactivar el schedule (no se elimina)"""
    service = RecurringScheduleService(db)
    return service.deactivate_schedule(schedule_id)
