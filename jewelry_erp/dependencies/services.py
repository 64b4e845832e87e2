"""
Construcción de los componentes a partir de la configuración.

Los componentes reciben su política y sus colaboradores por constructor;
este es el único lugar que lee ``settings`` para armarlos.
"""
from typing import Dict, Optional

from jewelry_erp.core.celery import celery_app
from jewelry_erp.core.config import settings
from jewelry_erp.core.task_queue import CeleryTaskQueue, TaskQueue
from jewelry_erp.database.database import SessionLocal
from jewelry_erp.modules.batches.coordinator import BatchOperationCoordinator, BatchPolicy
from jewelry_erp.modules.batches.handlers import (
    BatchHandler, CommunicationSendingHandler, InvoiceGenerationHandler, PdfGenerationHandler
)
from jewelry_erp.modules.batches.models import BatchKind
from jewelry_erp.modules.batches.store import SqlBatchOperationStore
from jewelry_erp.modules.communications.dispatcher import ChannelRouter, CommunicationDispatcher
from jewelry_erp.modules.communications.email_channel import EmailDispatcher
from jewelry_erp.modules.customers.directory import SqlCustomerDirectory
from jewelry_erp.modules.documents.renderer import DocumentStorage, TemplateInvoiceRenderer
from jewelry_erp.modules.invoices.generator import SqlInvoiceGenerator
from jewelry_erp.modules.recurring.engine import RecurrenceEngine, RecurrencePolicy
from jewelry_erp.modules.recurring.repository import SqlRecurrenceRepository


def recurrence_policy() -> RecurrencePolicy:
    return RecurrencePolicy(
        invoice_due_days=settings.INVOICE_DUE_DAYS,
        collaborator_timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        max_workers=settings.RECURRING_MAX_WORKERS,
        notification_delay_seconds=settings.NOTIFICATION_DELAY_SECONDS,
        notification_queue=settings.QUEUE_COMMUNICATIONS
    )


def batch_policy() -> BatchPolicy:
    return BatchPolicy(
        retry_delays=settings.BATCH_RETRY_DELAYS,
        max_retries=settings.BATCH_MAX_RETRIES,
        deadline_seconds=settings.BATCH_DEADLINE_SECONDS,
        collaborator_timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        queue=settings.QUEUE_BATCHES
    )


def get_task_queue() -> TaskQueue:
    return CeleryTaskQueue(celery_app)


def build_dispatcher() -> CommunicationDispatcher:
    """Solo el correo tiene transporte propio; SMS y WhatsApp se registran aparte."""
    return ChannelRouter({"email": EmailDispatcher.from_settings(settings)})


def build_recurrence_engine(session_factory=None, task_queue: Optional[TaskQueue] = None) -> RecurrenceEngine:
    session_factory = session_factory or SessionLocal
    return RecurrenceEngine(
        repository=SqlRecurrenceRepository(session_factory),
        invoice_generator=SqlInvoiceGenerator(session_factory, due_days=settings.INVOICE_DUE_DAYS),
        task_queue=task_queue or get_task_queue(),
        customers=SqlCustomerDirectory(session_factory),
        policy=recurrence_policy()
    )


def build_batch_handlers(session_factory=None) -> Dict[BatchKind, BatchHandler]:
    session_factory = session_factory or SessionLocal
    return {
        BatchKind.INVOICE_GENERATION: InvoiceGenerationHandler(
            SqlInvoiceGenerator(session_factory, due_days=settings.INVOICE_DUE_DAYS),
            due_days=settings.INVOICE_DUE_DAYS
        ),
        BatchKind.PDF_GENERATION: PdfGenerationHandler(
            TemplateInvoiceRenderer(session_factory, business_name=settings.BUSINESS_NAME),
            DocumentStorage(settings.DOCUMENTS_DIR)
        ),
        BatchKind.COMMUNICATION_SENDING: CommunicationSendingHandler(
            build_dispatcher(),
            SqlCustomerDirectory(session_factory)
        ),
    }


def build_batch_coordinator(session_factory=None, task_queue: Optional[TaskQueue] = None) -> BatchOperationCoordinator:
    session_factory = session_factory or SessionLocal
    return BatchOperationCoordinator(
        store=SqlBatchOperationStore(session_factory),
        task_queue=task_queue or get_task_queue(),
        handlers=build_batch_handlers(session_factory),
        policy=batch_policy()
    )


def get_batch_coordinator() -> BatchOperationCoordinator:
    """Dependencia de FastAPI"""
    return build_batch_coordinator()
