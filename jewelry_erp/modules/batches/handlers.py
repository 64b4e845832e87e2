"""
Despacho de cada tipo de lote a su colaborador.

Los handlers procesan los ítems uno a uno y persisten el resultado de cada
uno. En un reintento solo se procesan los ítems que no terminaron bien; si
algún ítem falla, el intento completo falla con BatchDispatchError para que
el coordinador aplique la política de reintentos.
"""
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional
import logging

from jewelry_erp.core.exceptions import CollaboratorError, JewelryERPError, RepositoryUnavailable
from jewelry_erp.core.timeouts import call_with_timeout
from jewelry_erp.modules.batches.models import BatchKind
from jewelry_erp.modules.batches.schemas import BatchState, ItemResult, ItemStatus
from jewelry_erp.modules.communications.dispatcher import CommunicationDispatcher
from jewelry_erp.modules.communications.messages import invoice_ready_message
from jewelry_erp.modules.customers.directory import CustomerDirectory
from jewelry_erp.modules.documents.renderer import DocumentStorage, PDFRenderer
from jewelry_erp.modules.invoices.generator import InvoiceGenerator

logger = logging.getLogger(__name__)


class BatchDispatchError(JewelryERPError):
    """Uno o más ítems del lote fallaron en este intento."""

    def __init__(self, failures: Dict[str, str], total: int):
        first_key, first_error = next(iter(failures.items()))
        super().__init__(
            f"{len(failures)} of {total} items failed (first: {first_key}: {first_error})"
        )
        self.failures = failures
        self.total = total


class BatchHandler(ABC):
    kind: BatchKind
    operation: str = "batch item"

    def item_key(self, item: Any) -> str:
        return str(item)

    @abstractmethod
    def process_item(self, batch: BatchState, item: Any) -> Dict[str, Any]:
        """Procesar un ítem; devuelve los datos a guardar en su resultado."""

    def run(self, batch: BatchState, attempt: int, store, timeout: Optional[float] = None) -> None:
        total = len(batch.items)
        completed = batch.completed_items()
        failures: Dict[str, str] = {}

        for item in batch.items:
            key = self.item_key(item)
            if key in completed:
                continue

            try:
                data = call_with_timeout(self.operation, self.process_item, batch, item, timeout=timeout)
                result = ItemResult(status=ItemStatus.COMPLETED, attempt=attempt, data=data or {})
                completed.add(key)
            except RepositoryUnavailable:
                raise
            except Exception as e:
                logger.error(f"Batch {batch.id}: {self.operation} failed for {key}: {str(e)}")
                result = ItemResult(status=ItemStatus.FAILED, attempt=attempt, error=str(e) or e.__class__.__name__)
                failures[key] = result.error

            processed = sum(1 for i in batch.items if self.item_key(i) in completed)
            store.record_progress(batch.id, {key: result}, processed, total)

        if failures:
            raise BatchDispatchError(failures, total)


class InvoiceGenerationHandler(BatchHandler):
    """Una factura por cliente; la clave de idempotencia evita duplicados en reintentos."""

    kind = BatchKind.INVOICE_GENERATION
    operation = "invoice generation"

    def __init__(self, invoice_generator: InvoiceGenerator, due_days: int = 30):
        self.invoice_generator = invoice_generator
        self.due_days = due_days

    def process_item(self, batch, item):
        options = batch.options
        issue_date = batch.started_at.date()
        due_days = options.get("due_days")
        if due_days is None:
            due_days = self.due_days

        payload = {
            "customer_id": str(item),
            "items": options.get("items") or [],
            "amount": options.get("amount"),
            "notes": options.get("notes"),
            "language": options.get("language"),
            "issue_date": issue_date.isoformat(),
            "due_date": (issue_date + timedelta(days=int(due_days))).isoformat(),
            "batch_operation_id": str(batch.id),
        }
        invoice = self.invoice_generator.generate(payload, f"batch:{batch.id}:{item}")
        return {"invoice_id": str(invoice.id), "invoice_number": invoice.number}


class PdfGenerationHandler(BatchHandler):
    kind = BatchKind.PDF_GENERATION
    operation = "document rendering"

    def __init__(self, renderer: PDFRenderer, storage: Optional[DocumentStorage] = None):
        self.renderer = renderer
        self.storage = storage

    def process_item(self, batch, item):
        content = self.renderer.render(item, batch.options)
        data = {"size": len(content)}
        if self.storage is not None:
            data["path"] = self.storage.save(batch.id, item, content)
        return data


class CommunicationSendingHandler(BatchHandler):
    kind = BatchKind.COMMUNICATION_SENDING
    operation = "communication dispatch"

    def __init__(self, dispatcher: CommunicationDispatcher, customers: CustomerDirectory):
        self.dispatcher = dispatcher
        self.customers = customers

    def process_item(self, batch, item):
        options = batch.options
        channel = options.get("method") or "email"

        target = self.customers.get_invoice_recipient(item)
        if target is None:
            raise CollaboratorError(f"Invoice {item} not found", retryable=False)
        recipient = target.contact.recipient_for(channel)
        if not recipient:
            raise CollaboratorError(
                f"Customer {target.contact.id} has no {channel} address", retryable=False
            )

        message = options.get("message") or invoice_ready_message(
            target.invoice_number, target.contact.preferred_language
        )
        result = self.dispatcher.send(channel, recipient, message, {
            "subject": options.get("subject"),
            "invoice_id": str(item),
            "invoice_number": target.invoice_number,
            "batch_operation_id": str(batch.id),
        })
        return {
            "channel": result.channel,
            "recipient": result.recipient,
            "provider_message_id": result.provider_message_id,
        }
