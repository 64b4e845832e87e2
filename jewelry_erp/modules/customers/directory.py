"""
Consulta de datos de contacto de clientes para notificaciones y envíos masivos.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional
from uuid import UUID
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from jewelry_erp.core.exceptions import RepositoryUnavailable
from jewelry_erp.modules.customers.models import CommunicationChannel, Customer
from jewelry_erp.modules.invoices.models import Invoice

logger = logging.getLogger(__name__)


class CustomerContact(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    preferred_channel: Optional[str] = None
    preferred_language: str = "en"

    def recipient_for(self, channel: str) -> Optional[str]:
        if channel == CommunicationChannel.EMAIL.value:
            return self.email
        if channel in (CommunicationChannel.SMS.value, CommunicationChannel.WHATSAPP.value):
            return self.phone
        return None

    @property
    def notification_target(self) -> Optional[tuple]:
        """(canal, destinatario) si el cliente tiene un canal preferido utilizable"""
        if not self.preferred_channel:
            return None
        recipient = self.recipient_for(self.preferred_channel)
        if not recipient:
            return None
        return self.preferred_channel, recipient


class InvoiceRecipient(BaseModel):
    """Cliente al que pertenece una factura, para los envíos masivos"""
    invoice_id: UUID
    invoice_number: str
    contact: CustomerContact


class CustomerDirectory(ABC):
    @abstractmethod
    def get_contact(self, customer_id) -> Optional[CustomerContact]:
        ...

    @abstractmethod
    def get_invoice_recipient(self, invoice_id) -> Optional[InvoiceRecipient]:
        ...


class SqlCustomerDirectory(CustomerDirectory):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_contact(self, customer_id) -> Optional[CustomerContact]:
        try:
            with self.session_factory() as db:
                customer = db.get(Customer, _as_uuid(customer_id))
                if not customer:
                    return None
                return CustomerContact.model_validate(customer)
        except DBAPIError as e:
            raise RepositoryUnavailable(f"Could not load customer {customer_id}: {e}") from e

    def get_invoice_recipient(self, invoice_id) -> Optional[InvoiceRecipient]:
        try:
            with self.session_factory() as db:
                row = db.execute(
                    select(Invoice.number, Customer)
                    .join(Customer, Customer.id == Invoice.customer_id)
                    .where(Invoice.id == _as_uuid(invoice_id))
                ).first()
                if not row:
                    return None
                number, customer = row
                return InvoiceRecipient(
                    invoice_id=_as_uuid(invoice_id),
                    invoice_number=number,
                    contact=CustomerContact.model_validate(customer)
                )
        except DBAPIError as e:
            raise RepositoryUnavailable(f"Could not load invoice {invoice_id}: {e}") from e


class InMemoryCustomerDirectory(CustomerDirectory):
    def __init__(self, contacts: Optional[Dict[UUID, CustomerContact]] = None):
        self.contacts: Dict[UUID, CustomerContact] = dict(contacts or {})
        self.invoices: Dict[UUID, tuple] = {}

    def add(self, contact: CustomerContact) -> CustomerContact:
        self.contacts[contact.id] = contact
        return contact

    def get_contact(self, customer_id) -> Optional[CustomerContact]:
        return self.contacts.get(_as_uuid(customer_id))

    def link_invoice(self, invoice_id, invoice_number: str, customer_id) -> None:
        self.invoices[_as_uuid(invoice_id)] = (invoice_number, _as_uuid(customer_id))

    def get_invoice_recipient(self, invoice_id) -> Optional[InvoiceRecipient]:
        linked = self.invoices.get(_as_uuid(invoice_id))
        if not linked:
            return None
        number, customer_id = linked
        contact = self.contacts.get(customer_id)
        if not contact:
            return None
        return InvoiceRecipient(invoice_id=_as_uuid(invoice_id), invoice_number=number, contact=contact)


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
