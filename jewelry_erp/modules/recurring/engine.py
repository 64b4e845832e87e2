"""
Motor de facturación recurrente.

Un ciclo busca los schedules vencidos y, para cada uno de forma
independiente, genera la factura (idempotente por schedule y fecha) y
avanza el cursor con un compare-and-swap. El fallo de un schedule no
interrumpe el ciclo; un fallo del repositorio sí.

Si el sistema estuvo caído varios periodos, cada ciclo emite una sola
factura y calcula la siguiente fecha desde la fecha almacenada, de modo que
los periodos atrasados se recuperan de uno en uno.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from pydantic import BaseModel

from jewelry_erp.common.mixins import utcnow
from jewelry_erp.core.exceptions import ScheduleNotFound
from jewelry_erp.core.task_queue import TaskQueue
from jewelry_erp.core.timeouts import call_with_timeout
from jewelry_erp.modules.communications.messages import invoice_generated_message
from jewelry_erp.modules.customers.directory import CustomerDirectory
from jewelry_erp.modules.invoices.generator import GeneratedInvoice, InvoiceGenerator
from jewelry_erp.modules.recurring.clock import idempotency_key, is_eligible, next_date
from jewelry_erp.modules.recurring.repository import RecurrenceRepository
from jewelry_erp.modules.recurring.schemas import (
    CycleOutcome, CycleOutcomeType, CycleSummary, ScheduleState
)

logger = logging.getLogger(__name__)

SEND_COMMUNICATION_TASK = "communications.send_communication"


class RecurrencePolicy(BaseModel):
    invoice_due_days: int = 30
    collaborator_timeout: Optional[float] = 300
    max_workers: int = 1
    notification_delay_seconds: float = 300
    notification_task: str = SEND_COMMUNICATION_TASK
    notification_queue: Optional[str] = None


class RecurrenceEngine:
    def __init__(
        self,
        repository: RecurrenceRepository,
        invoice_generator: InvoiceGenerator,
        task_queue: TaskQueue,
        customers: Optional[CustomerDirectory] = None,
        policy: Optional[RecurrencePolicy] = None,
        clock: Callable = utcnow
    ):
        self.repository = repository
        self.invoice_generator = invoice_generator
        self.task_queue = task_queue
        self.customers = customers
        self.policy = policy or RecurrencePolicy()
        self.clock = clock

    def run_cycle(self, today: date) -> CycleSummary:
        """Procesar todos los schedules vencidos a fecha ``today``."""
        logger.info(f"Recurring invoice cycle started for {today}")
        due = self.repository.find_due(today)
        logger.info(f"Found {len(due)} due recurring schedules")

        summary = CycleSummary(today=today)
        for outcome in self._process_all(due, today):
            summary.record(outcome)

        logger.info(
            f"Recurring invoice cycle finished for {today}: "
            f"fired={summary.fired} skipped={summary.skipped} failed={summary.failed}"
        )
        return summary

    def run_single(self, schedule_id, today: date) -> CycleSummary:
        """Procesar un único schedule (si está vencido)."""
        if self.repository.get(schedule_id) is None:
            raise ScheduleNotFound(schedule_id)
        summary = CycleSummary(today=today)
        summary.record(self._process(schedule_id, today))
        return summary

    def _process_all(self, due: List[ScheduleState], today: date) -> List[CycleOutcome]:
        if self.policy.max_workers > 1 and len(due) > 1:
            with ThreadPoolExecutor(max_workers=self.policy.max_workers, thread_name_prefix="recurring") as executor:
                return list(executor.map(lambda s: self._process(s.id, today), due))
        return [self._process(s.id, today) for s in due]

    def _process(self, schedule_id, today: date) -> CycleOutcome:
        # Re-read: the due snapshot may be stale if another worker got here first
        schedule = self.repository.get(schedule_id)
        if schedule is None or not is_eligible(schedule, today):
            logger.info(f"Skipping recurring schedule {schedule_id} - conditions not met")
            return CycleOutcome(schedule_id=schedule_id, outcome=CycleOutcomeType.SKIPPED)

        fire_date = schedule.next_fire_date
        key = idempotency_key(schedule.id, fire_date)

        try:
            invoice = call_with_timeout(
                "invoice generation",
                self.invoice_generator.generate,
                self._build_payload(schedule, fire_date),
                key,
                timeout=self.policy.collaborator_timeout
            )
        except Exception as e:
            logger.error(f"Failed to generate invoice for recurring schedule {schedule.id}: {str(e)}")
            return CycleOutcome(
                schedule_id=schedule.id,
                outcome=CycleOutcomeType.FAILED,
                fire_date=fire_date,
                error=str(e)
            )

        advanced = self.repository.advance(
            schedule.id,
            expected_next_fire_date=fire_date,
            new_next_fire_date=next_date(fire_date, schedule.frequency, schedule.interval),
            fired_at=self.clock()
        )
        if not advanced and not self._count_after_edit(schedule, fire_date, invoice):
            return CycleOutcome(
                schedule_id=schedule.id,
                outcome=CycleOutcomeType.SKIPPED,
                fire_date=fire_date,
                invoice_id=invoice.id,
                invoice_number=invoice.number
            )

        logger.info(f"Generated invoice {invoice.number} from recurring schedule {schedule.id}")
        if schedule.max_occurrences is not None and schedule.occurrences_generated + 1 >= schedule.max_occurrences:
            logger.info(f"Deactivated recurring schedule {schedule.id} - max occurrences reached")

        self._schedule_notification(schedule, invoice)
        return CycleOutcome(
            schedule_id=schedule.id,
            outcome=CycleOutcomeType.FIRED,
            fire_date=fire_date,
            invoice_id=invoice.id,
            invoice_number=invoice.number
        )

    def _count_after_edit(self, schedule: ScheduleState, fire_date: date, invoice: GeneratedInvoice) -> bool:
        """
        Resolver un advance perdido.

        Si el contador cambió, otro worker ya contó esta misma factura. Si no
        cambió pero el cursor sí, una edición (cambio de cadencia, reanudación)
        lo movió mientras se generaba: la factura existe y se cuenta sin tocar
        el cursor nuevo.
        """
        current = self.repository.get(schedule.id)
        if current is None or current.occurrences_generated != schedule.occurrences_generated:
            logger.info(f"Recurring schedule {schedule.id} was already advanced past {fire_date}")
            return False

        if current.next_fire_date != fire_date and self.repository.record_occurrence(
            schedule.id, schedule.occurrences_generated, self.clock()
        ):
            logger.info(
                f"Recurring schedule {schedule.id} was edited while invoicing {fire_date}; "
                f"counted invoice {invoice.number} without moving next fire date {current.next_fire_date}"
            )
            return True

        logger.warning(f"Invoice {invoice.number} for recurring schedule {schedule.id} was generated but not counted")
        return False

    def _build_payload(self, schedule: ScheduleState, fire_date: date) -> Dict[str, Any]:
        payload = dict(schedule.payload_template)
        payload.update({
            "customer_id": str(schedule.customer_id),
            "recurring_schedule_id": str(schedule.id),
            "issue_date": fire_date.isoformat(),
            "due_date": (fire_date + timedelta(days=self.policy.invoice_due_days)).isoformat(),
            "language": schedule.language,
            "status": "draft",
        })
        return payload

    def _schedule_notification(self, schedule: ScheduleState, invoice: GeneratedInvoice) -> None:
        """Best effort: un fallo aquí nunca deshace la factura."""
        if self.customers is None:
            return
        try:
            contact = self.customers.get_contact(schedule.customer_id)
            target = contact.notification_target if contact else None
            if not target:
                return
            channel, recipient = target
            self.task_queue.enqueue(
                self.policy.notification_task,
                kwargs={
                    "channel": channel,
                    "recipient": recipient,
                    "message": invoice_generated_message(invoice.number, contact.preferred_language),
                    "metadata": {
                        "invoice_id": str(invoice.id),
                        "invoice_number": invoice.number,
                        "customer_id": str(schedule.customer_id),
                        "recurring_schedule_id": str(schedule.id),
                    },
                },
                countdown=self.policy.notification_delay_seconds,
                queue=self.policy.notification_queue
            )
        except Exception as e:
            logger.warning(f"Could not schedule notification for invoice {invoice.number}: {str(e)}")
