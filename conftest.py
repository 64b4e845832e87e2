"""
Fixtures compartidas por los tests de todos los módulos.

Cada test recibe una base SQLite en memoria nueva, colas y stores en
memoria y colaboradores falsos con fallos configurables.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid5, NAMESPACE_URL

import pytest
from sqlalchemy.orm import sessionmaker

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.core.task_queue import InMemoryTaskQueue
from jewelry_erp.database.database import Base, build_engine
from jewelry_erp.modules.communications.dispatcher import CommunicationDispatcher, DispatchResult
from jewelry_erp.modules.customers.models import Customer
from jewelry_erp.modules.documents.renderer import PDFRenderer
from jewelry_erp.modules.invoices.generator import GeneratedInvoice, InvoiceGenerator, payload_total

# Registrar todas las tablas en el metadata
import jewelry_erp.modules.customers.models  # noqa: F401
import jewelry_erp.modules.invoices.models  # noqa: F401
import jewelry_erp.modules.recurring.models  # noqa: F401
import jewelry_erp.modules.batches.models  # noqa: F401


class FakeClock:
    """Reloj controlable por el test"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeInvoiceGenerator(InvoiceGenerator):
    """
    Generador en memoria: misma clave, misma factura.

    ``fail_for`` contiene customer_ids que siempre fallan; ``failures`` es
    el número de llamadas que fallan antes de empezar a responder bien.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.invoices: Dict[str, GeneratedInvoice] = {}
        self.fail_for: set = set()
        self.failures = 0

    def generate(self, payload, idempotency_key):
        self.calls.append({"payload": dict(payload), "idempotency_key": idempotency_key})
        if str(payload.get("customer_id")) in self.fail_for:
            raise CollaboratorError(f"generation failed for {payload.get('customer_id')}")
        if self.failures > 0:
            self.failures -= 1
            raise CollaboratorError("invoice service unavailable")

        if idempotency_key not in self.invoices:
            self.invoices[idempotency_key] = GeneratedInvoice(
                id=uuid5(NAMESPACE_URL, idempotency_key),
                number=f"INV-{len(self.invoices) + 1:06d}",
                customer_id=UUID(str(payload["customer_id"])),
                idempotency_key=idempotency_key,
                total_amount=payload_total(payload),
                issue_date=date.fromisoformat(payload["issue_date"]),
                due_date=date.fromisoformat(payload["due_date"]) if payload.get("due_date") else None,
            )
        return self.invoices[idempotency_key]


class FakeRenderer(PDFRenderer):
    def __init__(self):
        self.calls: List[str] = []
        self.fail_for: set = set()

    def render(self, invoice_id, options=None) -> bytes:
        self.calls.append(str(invoice_id))
        if str(invoice_id) in self.fail_for:
            raise CollaboratorError(f"render failed for {invoice_id}")
        return f"invoice {invoice_id}".encode("utf-8")


class FakeDispatcher(CommunicationDispatcher):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for: set = set()

    def send(self, channel, recipient, message, metadata=None) -> DispatchResult:
        if recipient in self.fail_for:
            raise CollaboratorError(f"gateway rejected {recipient}")
        self.sent.append({"channel": channel, "recipient": recipient, "message": message, "metadata": metadata or {}})
        return DispatchResult(channel=channel, recipient=recipient, provider_message_id=f"msg-{len(self.sent)}")


# ===== FIXTURES =====

@pytest.fixture
def db_engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_customer(session_factory):
    """Crear clientes en la base de pruebas"""
    def _make(name: str = "Shirin Jewelry", email: Optional[str] = "client@example.com",
              phone: Optional[str] = "+989121234567", preferred_channel: Optional[str] = "email",
              preferred_language: str = "en") -> Customer:
        with session_factory.begin() as db:
            customer = Customer(
                name=name,
                email=email,
                phone=phone,
                preferred_channel=preferred_channel,
                preferred_language=preferred_language,
            )
            db.add(customer)
        return customer
    return _make


@pytest.fixture
def task_queue():
    return InMemoryTaskQueue()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def invoice_generator():
    return FakeInvoiceGenerator()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def sample_items():
    return [
        {"description": "Gold ring 18k", "quantity": 1, "unit_price": "450.00"},
        {"description": "Polishing service", "quantity": 2, "unit_price": "25.00"},
    ]
