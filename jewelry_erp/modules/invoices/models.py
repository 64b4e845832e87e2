from jewelry_erp.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Enum, Date, Text, JSON, Uuid, UniqueConstraint
from datetime import date
from uuid import uuid4
from jewelry_erp.common.mixins import TimestampMixin, utcnow
import enum


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"      # Borrador, generado por recurrencia o lote
    OPEN = "open"        # Emitida, pendiente de pago
    PAID = "paid"        # Pagada completamente
    VOID = "void"        # Anulada


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)

    # Invoice data
    number = Column(String(50), nullable=False, unique=True)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    language = Column(String(5), nullable=False, default="en")

    # Misma clave => misma factura; evita la doble facturación en reintentos
    idempotency_key = Column(String(200), nullable=False, unique=True)

    # Dates
    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)

    # Content
    notes = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    line_items = Column(JSON, nullable=True)  # Snapshot de los ítems recibidos
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)


class InvoiceSequence(Base):
    """Tabla para manejar la secuencia de numeración de facturas"""
    __tablename__ = "invoice_sequences"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(50), nullable=False, default="default")
    current_number = Column(Integer, nullable=False, default=0)
    prefix = Column(String(10), nullable=True)  # Ej: "INV-"

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_invoice_sequence_name"),
    )
