from jewelry_erp.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, Numeric, Enum, Text, JSON, Uuid, Index
from uuid import uuid4
from jewelry_erp.common.mixins import TimestampMixin
import enum


class BatchKind(str, enum.Enum):
    INVOICE_GENERATION = "invoice_generation"
    PDF_GENERATION = "pdf_generation"
    COMMUNICATION_SENDING = "communication_sending"


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


# Transiciones permitidas: solo hacia adelante
ALLOWED_TRANSITIONS = {
    BatchStatus.PENDING: {BatchStatus.RUNNING, BatchStatus.FAILED},
    BatchStatus.RUNNING: {BatchStatus.COMPLETED, BatchStatus.FAILED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.FAILED: set(),
}


class BatchOperation(Base, TimestampMixin):
    """
    Operación masiva (facturas, documentos o comunicaciones).

    Se conserva indefinidamente para auditoría.
    """
    __tablename__ = "batch_operations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    kind = Column(Enum(BatchKind), nullable=False)
    status = Column(Enum(BatchStatus), nullable=False, default=BatchStatus.PENDING)

    items = Column(JSON, nullable=False, default=list)  # Inmutable una vez iniciado
    options = Column(JSON, nullable=False, default=dict)

    attempt = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Progreso por ítem
    processed_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)
    progress = Column(Numeric(5, 2), nullable=False, default=0)
    results = Column(JSON, nullable=False, default=dict)
    summary = Column(JSON, nullable=True)

    created_by = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_batch_operations_status_started", "status", "started_at"),
        Index("idx_batch_operations_kind_created", "kind", "created_at"),
    )
