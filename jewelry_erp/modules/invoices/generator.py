"""
Generación de facturas para la facturación recurrente y los lotes.

El cálculo del total pertenece al módulo de precios; aquí solo se toma el
``amount`` del payload o la suma de ``quantity * unit_price`` de sus ítems.
"""
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.modules.invoices.models import Invoice, InvoiceSequence, InvoiceStatus

logger = logging.getLogger(__name__)


class GeneratedInvoice(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    number: str
    customer_id: UUID
    idempotency_key: str
    total_amount: Decimal
    issue_date: date
    due_date: Optional[date] = None


class InvoiceGenerator(ABC):
    @abstractmethod
    def generate(self, payload: Dict[str, Any], idempotency_key: str) -> GeneratedInvoice:
        """Crear la factura; la misma clave siempre devuelve la misma factura."""


def payload_total(payload: Dict[str, Any]) -> Decimal:
    if payload.get("amount") is not None:
        return Decimal(str(payload["amount"]))
    total = Decimal("0")
    for item in payload.get("items") or []:
        quantity = Decimal(str(item.get("quantity", 0)))
        unit_price = Decimal(str(item.get("unit_price", 0)))
        total += quantity * unit_price
    return total.quantize(Decimal("0.01"))


class SqlInvoiceGenerator(InvoiceGenerator):
    def __init__(self, session_factory, prefix: str = "INV-", currency: str = "USD", due_days: int = 30):
        self.session_factory = session_factory
        self.prefix = prefix
        self.currency = currency
        self.due_days = due_days

    def generate(self, payload: Dict[str, Any], idempotency_key: str) -> GeneratedInvoice:
        try:
            existing = self._find_by_key(idempotency_key)
            if existing:
                logger.info(f"Invoice {existing.number} already generated for key {idempotency_key}")
                return existing
            return self._create(payload, idempotency_key)
        except IntegrityError:
            # Otro worker insertó la misma clave entre la consulta y el insert
            existing = self._find_by_key(idempotency_key)
            if existing:
                return existing
            raise CollaboratorError(f"Could not create invoice for key {idempotency_key}")
        except DBAPIError as e:
            raise CollaboratorError(f"Invoice storage failed: {e}") from e

    def _find_by_key(self, idempotency_key: str) -> Optional[GeneratedInvoice]:
        with self.session_factory() as db:
            invoice = db.execute(
                select(Invoice).where(Invoice.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            return GeneratedInvoice.model_validate(invoice) if invoice else None

    def _create(self, payload: Dict[str, Any], idempotency_key: str) -> GeneratedInvoice:
        customer_id = payload.get("customer_id")
        if not customer_id:
            raise CollaboratorError("Invoice payload has no customer_id", retryable=False)

        issue_date = _as_date(payload.get("issue_date")) or date.today()
        due_date = _as_date(payload.get("due_date")) or issue_date + timedelta(days=self.due_days)
        items: List[Dict[str, Any]] = payload.get("items") or []

        with self.session_factory.begin() as db:
            invoice = Invoice(
                customer_id=UUID(str(customer_id)),
                number=self._next_number(db),
                status=InvoiceStatus.DRAFT,
                language=payload.get("language") or "en",
                idempotency_key=idempotency_key,
                issue_date=issue_date,
                due_date=due_date,
                notes=payload.get("notes"),
                currency=payload.get("currency") or self.currency,
                line_items=items,
                total_amount=payload_total(payload),
            )
            db.add(invoice)
            db.flush()
            generated = GeneratedInvoice.model_validate(invoice)

        logger.info(f"Generated invoice {generated.number} for customer {generated.customer_id}")
        return generated

    def _next_number(self, db) -> str:
        sequence = db.execute(
            select(InvoiceSequence)
            .where(InvoiceSequence.name == "default")
            .with_for_update()
        ).scalar_one_or_none()

        if not sequence:
            sequence = InvoiceSequence(name="default", current_number=0, prefix=self.prefix)
            db.add(sequence)

        sequence.current_number += 1
        return f"{sequence.prefix or ''}{sequence.current_number:06d}"


def _as_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))
