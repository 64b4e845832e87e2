from pydantic import BaseModel, ConfigDict, Field, model_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from jewelry_erp.modules.recurring.clock import Frequency


class ScheduleState(BaseModel):
    """Snapshot del schedule que manejan el repositorio y el motor"""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    name: str = ""
    language: str = "en"
    frequency: Frequency
    interval: int = 1
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_fire_date: date
    max_occurrences: Optional[int] = None
    occurrences_generated: int = 0
    is_active: bool = True
    last_fired_at: Optional[datetime] = None
    payload_template: Dict[str, Any] = Field(default_factory=dict)


# Schedule Schemas
class ScheduleCreate(BaseModel):
    customer_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    language: str = Field("en", max_length=5)
    amount: Optional[Decimal] = Field(None, ge=0)
    frequency: Frequency = Frequency.MONTHLY
    interval: int = Field(1, ge=1, le=365)
    start_date: date
    end_date: Optional[date] = None
    next_fire_date: Optional[date] = Field(None, description="Por defecto: start_date + un periodo")
    max_occurrences: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    payload_template: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_dates(self):
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date no puede ser anterior a start_date")
        if self.next_fire_date and self.next_fire_date < self.start_date:
            raise ValueError("next_fire_date no puede ser anterior a start_date")
        return self


class ScheduleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    language: Optional[str] = Field(None, max_length=5)
    amount: Optional[Decimal] = Field(None, ge=0)
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(None, ge=1, le=365)
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    payload_template: Optional[Dict[str, Any]] = None


class ScheduleOut(BaseModel):
    id: UUID
    customer_id: UUID
    name: str
    description: Optional[str] = None
    language: str
    amount: Optional[Decimal] = None
    frequency: Frequency
    interval: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_fire_date: date
    max_occurrences: Optional[int] = None
    occurrences_generated: int
    is_active: bool
    last_fired_at: Optional[datetime] = None
    payload_template: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ScheduleList(BaseModel):
    schedules: List[ScheduleOut]
    total: int
    limit: int
    offset: int


class ScheduleFilters(BaseModel):
    customer_id: Optional[UUID] = None
    active: Optional[bool] = None
    frequency: Optional[Frequency] = None
    due_within_days: Optional[int] = Field(None, ge=0)
    search: Optional[str] = None


class ScheduleStats(BaseModel):
    total_active: int
    total_paused: int
    due_today: int
    due_this_week: int
    total_generated: int


# Cycle Schemas
class CycleOutcomeType(str, Enum):
    FIRED = "fired"
    SKIPPED = "skipped"
    FAILED = "failed"


class CycleOutcome(BaseModel):
    schedule_id: UUID
    outcome: CycleOutcomeType
    fire_date: Optional[date] = None
    invoice_id: Optional[UUID] = None
    invoice_number: Optional[str] = None
    error: Optional[str] = None


class CycleSummary(BaseModel):
    today: date
    fired: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[CycleOutcome] = Field(default_factory=list)

    def record(self, outcome: CycleOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome == CycleOutcomeType.FIRED:
            self.fired += 1
        elif outcome.outcome == CycleOutcomeType.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class RunCycleRequest(BaseModel):
    today: Optional[date] = None
    schedule_id: Optional[UUID] = None


class RunCycleResponse(BaseModel):
    task_id: str
    task_name: str
