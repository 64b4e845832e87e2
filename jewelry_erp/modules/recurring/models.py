from jewelry_erp.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric, Enum, Date, Text, JSON, Uuid, Index
from uuid import uuid4
from jewelry_erp.common.mixins import TimestampMixin
from jewelry_erp.modules.recurring.clock import Frequency


class RecurringSchedule(Base, TimestampMixin):
    """
    Facturación recurrente de un cliente.

    Solo el motor de recurrencia avanza next_fire_date y los contadores; los
    schedules nunca se borran, se desactivan.
    """
    __tablename__ = "recurring_schedules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    language = Column(String(5), nullable=False, default="en")
    amount = Column(Numeric(15, 2), nullable=True)  # Informativo

    # Cadencia
    frequency = Column(Enum(Frequency), nullable=False, default=Frequency.MONTHLY)
    interval = Column(Integer, nullable=False, default=1)

    # Límites
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    max_occurrences = Column(Integer, nullable=True)

    # Estado del cursor
    next_fire_date = Column(Date, nullable=False)
    occurrences_generated = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    last_fired_at = Column(DateTime(timezone=True), nullable=True)

    # Datos opacos para el generador de facturas (ítems, notas...)
    payload_template = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_recurring_schedules_due", "is_active", "next_fire_date"),
    )
