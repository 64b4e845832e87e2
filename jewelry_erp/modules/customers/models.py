"""
Modelo SQLAlchemy de Clientes

Solo los datos de contacto que necesitan la facturación recurrente y los
envíos masivos: nombre, canales de comunicación y preferencias.
"""

from jewelry_erp.database.database import Base
from sqlalchemy import Column, String, Boolean, Uuid
from uuid import uuid4
from jewelry_erp.common.mixins import TimestampMixin
import enum


class CommunicationChannel(enum.Enum):
    """Canales de comunicación soportados"""
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class Customer(Base, TimestampMixin):
    __tablename__ = "customers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    name = Column(String(200), nullable=False, index=True)
    email = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)

    # Preferencias
    preferred_channel = Column(String(20), nullable=True)  # email, sms, whatsapp
    preferred_language = Column(String(5), nullable=False, default="en")

    is_active = Column(Boolean, nullable=False, default=True)
