from pydantic import BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from jewelry_erp.modules.batches.models import BatchKind, BatchStatus


class ItemStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ItemResult(BaseModel):
    """Resultado de un ítem del lote en su último intento"""
    status: ItemStatus
    attempt: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class BatchState(BaseModel):
    """Snapshot de la operación que manejan el store y el coordinador"""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: BatchKind
    status: BatchStatus = BatchStatus.PENDING
    items: List[Any] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    processed_count: int = 0
    total_count: int = 0
    progress: Decimal = Decimal("0")
    results: Dict[str, ItemResult] = Field(default_factory=dict)
    summary: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def completed_items(self) -> set:
        return {key for key, result in self.results.items() if result.status == ItemStatus.COMPLETED}


# Request Schemas
class BatchCreate(BaseModel):
    kind: BatchKind
    items: List[Any] = Field(..., min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None

    @field_validator("items")
    @classmethod
    def validate_items(cls, v):
        if any(item is None or item == "" for item in v):
            raise ValueError("Los ítems del lote no pueden estar vacíos")
        return v


class InvoiceBatchRequest(BaseModel):
    """Generar una factura por cliente"""
    customer_ids: List[UUID] = Field(..., min_length=1)
    items: List[Dict[str, Any]] = Field(default_factory=list, description="Líneas de la factura")
    amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    due_days: Optional[int] = Field(None, ge=0)
    language: Optional[str] = Field(None, max_length=5)
    created_by: Optional[str] = None


class PdfBatchRequest(BaseModel):
    invoice_ids: List[UUID] = Field(..., min_length=1)
    language: Optional[str] = Field(None, max_length=5)
    created_by: Optional[str] = None


class CommunicationMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class CommunicationBatchRequest(BaseModel):
    invoice_ids: List[UUID] = Field(..., min_length=1)
    method: CommunicationMethod = CommunicationMethod.EMAIL
    message: Optional[str] = None
    subject: Optional[str] = Field(None, max_length=200)
    created_by: Optional[str] = None


class MarkFailedRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


# Response Schemas
class BatchOut(BaseModel):
    id: UUID
    kind: BatchKind
    status: BatchStatus
    attempt: int
    total_count: int
    processed_count: int
    progress: Decimal
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BatchDetail(BatchOut):
    items: List[Any]
    options: Dict[str, Any]
    results: Dict[str, ItemResult]


class BatchList(BaseModel):
    batches: List[BatchOut]
    total: int
    limit: int
    offset: int


class BatchFilters(BaseModel):
    kind: Optional[BatchKind] = None
    status: Optional[BatchStatus] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
