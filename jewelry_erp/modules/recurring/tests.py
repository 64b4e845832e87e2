"""
Tests para el módulo de Facturación Recurrente

Cubren:
- Cálculo de fechas (meses de calendario, años bisiestos)
- Elegibilidad y consulta de schedules vencidos
- Ciclo del motor: idempotencia, límites, fallos aislados, recuperación
- Avance compare-and-swap bajo concurrencia y ediciones a mitad de ciclo
- Servicio de configuración, API y tarea con lock single-flight
"""

import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from jewelry_erp.core.exceptions import RepositoryUnavailable, ScheduleNotFound
from jewelry_erp.core.task_queue import InMemoryTaskQueue
from jewelry_erp.modules.customers.directory import (
    CustomerContact, InMemoryCustomerDirectory, SqlCustomerDirectory
)
from jewelry_erp.modules.invoices.generator import SqlInvoiceGenerator
from jewelry_erp.modules.invoices.models import Invoice
from jewelry_erp.modules.recurring.clock import Frequency, idempotency_key, is_eligible, next_date
from jewelry_erp.modules.recurring.engine import RecurrenceEngine, RecurrencePolicy
from jewelry_erp.modules.recurring.models import RecurringSchedule
from jewelry_erp.modules.recurring.repository import InMemoryRecurrenceRepository, SqlRecurrenceRepository
from jewelry_erp.modules.recurring.schemas import (
    CycleOutcomeType, ScheduleCreate, ScheduleFilters, ScheduleState, ScheduleUpdate
)
from jewelry_erp.modules.recurring.service import RecurringScheduleService
from jewelry_erp.modules.recurring.tasks import PROCESS_RECURRING_TASK, cycle_lock_name, run_recurring_cycle


def make_state(**overrides) -> ScheduleState:
    data = {
        "id": uuid4(),
        "customer_id": uuid4(),
        "name": "Monthly maintenance",
        "frequency": Frequency.MONTHLY,
        "interval": 1,
        "start_date": date(2024, 1, 1),
        "next_fire_date": date(2024, 3, 1),
        "payload_template": {"items": [{"description": "Watch service", "quantity": 1, "unit_price": "80.00"}]},
    }
    data.update(overrides)
    return ScheduleState(**data)


class EditDuringGeneration:
    """Generador que aplica una edición del schedule antes de emitir la factura"""

    def __init__(self, inner, *edits):
        self.inner = inner
        self.edits = list(edits)

    def generate(self, payload, idempotency_key):
        if self.edits:
            self.edits.pop(0)()
        return self.inner.generate(payload, idempotency_key)


@pytest.fixture
def repository():
    return InMemoryRecurrenceRepository()


@pytest.fixture
def customers():
    return InMemoryCustomerDirectory()


@pytest.fixture
def engine(repository, invoice_generator, task_queue, customers, clock):
    return RecurrenceEngine(
        repository=repository,
        invoice_generator=invoice_generator,
        task_queue=task_queue,
        customers=customers,
        policy=RecurrencePolicy(),
        clock=clock
    )


# ===== TESTS DE FECHAS =====

class TestNextDate:
    """Tests para el cálculo de la siguiente fecha de emisión"""

    def test_monthly_clamps_to_leap_day(self):
        assert next_date(date(2024, 1, 31), Frequency.MONTHLY, 1) == date(2024, 2, 29)

    def test_monthly_clamps_to_end_of_february(self):
        assert next_date(date(2023, 1, 31), Frequency.MONTHLY, 1) == date(2023, 2, 28)

    def test_quarterly_adds_three_months(self):
        assert next_date(date(2024, 1, 15), Frequency.QUARTERLY, 1) == date(2024, 4, 15)

    def test_yearly_with_interval(self):
        assert next_date(date(2024, 1, 15), Frequency.YEARLY, 2) == date(2026, 1, 15)

    def test_daily_and_weekly(self):
        assert next_date(date(2024, 2, 28), Frequency.DAILY, 2) == date(2024, 3, 1)
        assert next_date(date(2024, 12, 25), Frequency.WEEKLY, 2) == date(2025, 1, 8)

    def test_quarterly_clamp(self):
        assert next_date(date(2023, 11, 30), Frequency.QUARTERLY, 1) == date(2024, 2, 29)

    def test_months_are_computed_from_the_given_date(self):
        """Jan 31 + 2 meses es Mar 31, no Mar 29"""
        assert next_date(date(2024, 1, 31), Frequency.MONTHLY, 2) == date(2024, 3, 31)

    def test_accepts_frequency_value(self):
        assert next_date(date(2024, 1, 15), "weekly", 1) == date(2024, 1, 22)

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            next_date(date(2024, 1, 15), Frequency.MONTHLY, 0)

    def test_invalid_frequency(self):
        with pytest.raises(ValueError):
            next_date(date(2024, 1, 15), "fortnightly", 1)

    def test_idempotency_key_is_deterministic(self):
        schedule_id = uuid4()
        assert idempotency_key(schedule_id, date(2024, 3, 1)) == f"recurring:{schedule_id}:2024-03-01"
        assert idempotency_key(schedule_id, date(2024, 3, 1)) == idempotency_key(schedule_id, date(2024, 3, 1))


# ===== TESTS DE ELEGIBILIDAD =====

class TestEligibility:

    def test_due_schedule_is_eligible(self):
        assert is_eligible(make_state(), date(2024, 3, 1))

    def test_future_next_fire_date(self):
        assert not is_eligible(make_state(), date(2024, 2, 29))

    def test_not_before_start_date(self):
        state = make_state(start_date=date(2024, 4, 1), next_fire_date=date(2024, 3, 1))
        assert not is_eligible(state, date(2024, 3, 15))

    def test_inactive(self):
        assert not is_eligible(make_state(is_active=False), date(2024, 3, 1))

    def test_end_date_is_enforced(self, repository):
        """Con end_date 2024-06-01 nunca se devuelve a partir del 2024-06-02"""
        state = repository.add(make_state(
            next_fire_date=date(2024, 5, 1),
            end_date=date(2024, 6, 1),
            max_occurrences=10,
            occurrences_generated=2
        ))
        assert [s.id for s in repository.find_due(date(2024, 6, 1))] == [state.id]
        assert repository.find_due(date(2024, 6, 2)) == []
        assert repository.find_due(date(2025, 1, 1)) == []

    def test_max_occurrences_reached(self, repository):
        repository.add(make_state(max_occurrences=3, occurrences_generated=3))
        assert repository.find_due(date(2030, 1, 1)) == []

    def test_find_due_orders_by_next_fire_date(self, repository):
        later = repository.add(make_state(next_fire_date=date(2024, 3, 1)))
        earlier = repository.add(make_state(next_fire_date=date(2024, 2, 1)))
        assert [s.id for s in repository.find_due(date(2024, 3, 1))] == [earlier.id, later.id]


# ===== TESTS DEL REPOSITORIO =====

class TestInMemoryRepository:

    def test_advance_is_compare_and_swap(self, repository, clock):
        state = repository.add(make_state())
        assert repository.advance(state.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        assert repository.advance(state.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is False

        stored = repository.get(state.id)
        assert stored.next_fire_date == date(2024, 4, 1)
        assert stored.occurrences_generated == 1
        assert stored.last_fired_at == clock()

    def test_concurrent_advance_only_one_wins(self, repository, clock):
        state = repository.add(make_state())
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(repository.advance(state.id, date(2024, 3, 1), date(2024, 4, 1), clock()))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
        assert repository.get(state.id).occurrences_generated == 1

    def test_advance_deactivates_at_cap(self, repository, clock):
        state = repository.add(make_state(max_occurrences=2, occurrences_generated=1))
        assert repository.advance(state.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        stored = repository.get(state.id)
        assert stored.is_active is False
        assert stored.occurrences_generated == 2

    def test_record_occurrence_keeps_cursor(self, repository, clock):
        state = repository.add(make_state(next_fire_date=date(2024, 3, 8)))
        assert repository.record_occurrence(state.id, 0, clock()) is True
        assert repository.record_occurrence(state.id, 0, clock()) is False

        stored = repository.get(state.id)
        assert stored.occurrences_generated == 1
        assert stored.next_fire_date == date(2024, 3, 8)

    def test_record_occurrence_respects_cap(self, repository, clock):
        state = repository.add(make_state(max_occurrences=2, occurrences_generated=1))
        assert repository.record_occurrence(state.id, 1, clock()) is True
        assert repository.get(state.id).is_active is False
        assert repository.record_occurrence(state.id, 2, clock()) is False

    def test_advance_paused_schedule_keeps_it_paused(self, repository, clock):
        state = repository.add(make_state(is_active=False))
        assert repository.advance(state.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        stored = repository.get(state.id)
        assert stored.occurrences_generated == 1
        assert stored.is_active is False

    def test_deactivate(self, repository):
        state = repository.add(make_state())
        assert repository.deactivate(state.id) is True
        assert repository.get(state.id).is_active is False
        assert repository.deactivate(uuid4()) is False


class TestSqlRepository:
    """Mismas garantías sobre la base de datos"""

    @pytest.fixture
    def customer(self, make_customer):
        return make_customer()

    def add_schedule(self, session_factory, customer_id, **overrides) -> RecurringSchedule:
        data = {
            "customer_id": customer_id,
            "name": "Gold savings plan",
            "frequency": Frequency.MONTHLY,
            "interval": 1,
            "start_date": date(2024, 1, 1),
            "next_fire_date": date(2024, 3, 1),
            "occurrences_generated": 0,
            "is_active": True,
            "payload_template": {},
        }
        data.update(overrides)
        with session_factory.begin() as db:
            schedule = RecurringSchedule(**data)
            db.add(schedule)
        return schedule

    def test_find_due_applies_all_conditions(self, session_factory, customer):
        due = self.add_schedule(session_factory, customer.id)
        self.add_schedule(session_factory, customer.id, is_active=False)
        self.add_schedule(session_factory, customer.id, next_fire_date=date(2024, 3, 2))
        self.add_schedule(session_factory, customer.id, end_date=date(2024, 2, 28))
        self.add_schedule(session_factory, customer.id, max_occurrences=2, occurrences_generated=2)
        self.add_schedule(session_factory, customer.id, start_date=date(2024, 4, 1))

        repository = SqlRecurrenceRepository(session_factory)
        assert [s.id for s in repository.find_due(date(2024, 3, 1))] == [due.id]

    def test_stale_advance_returns_false(self, session_factory, customer, clock):
        schedule = self.add_schedule(session_factory, customer.id)
        repository = SqlRecurrenceRepository(session_factory)

        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is False

        stored = repository.get(schedule.id)
        assert stored.occurrences_generated == 1
        assert stored.next_fire_date == date(2024, 4, 1)
        assert stored.last_fired_at == clock()

    def test_advance_reaching_cap_deactivates(self, session_factory, customer, clock):
        schedule = self.add_schedule(session_factory, customer.id, max_occurrences=3, occurrences_generated=2)
        repository = SqlRecurrenceRepository(session_factory)

        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        stored = repository.get(schedule.id)
        assert stored.is_active is False
        assert stored.occurrences_generated == 3
        assert repository.find_due(date(2030, 1, 1)) == []

    def test_record_occurrence_is_conditional_on_count(self, session_factory, customer, clock):
        schedule = self.add_schedule(session_factory, customer.id, max_occurrences=2)
        repository = SqlRecurrenceRepository(session_factory)

        assert repository.record_occurrence(schedule.id, 0, clock()) is True
        assert repository.record_occurrence(schedule.id, 0, clock()) is False
        assert repository.record_occurrence(schedule.id, 1, clock()) is True

        stored = repository.get(schedule.id)
        assert stored.occurrences_generated == 2
        assert stored.next_fire_date == date(2024, 3, 1)
        assert stored.is_active is False

    def test_advance_paused_schedule(self, session_factory, customer, clock):
        schedule = self.add_schedule(session_factory, customer.id, is_active=False)
        repository = SqlRecurrenceRepository(session_factory)

        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True
        stored = repository.get(schedule.id)
        assert stored.occurrences_generated == 1
        assert stored.is_active is False

    def test_get_unknown_schedule(self, session_factory):
        assert SqlRecurrenceRepository(session_factory).get(uuid4()) is None


# ===== TESTS DEL MOTOR =====

class TestRecurrenceEngine:

    def test_fires_due_schedule(self, engine, repository, invoice_generator):
        state = repository.add(make_state())
        summary = engine.run_cycle(date(2024, 3, 1))

        assert (summary.fired, summary.skipped, summary.failed) == (1, 0, 0)
        call = invoice_generator.calls[0]
        assert call["idempotency_key"] == f"recurring:{state.id}:2024-03-01"
        assert call["payload"]["issue_date"] == "2024-03-01"
        assert call["payload"]["due_date"] == "2024-03-31"
        assert call["payload"]["customer_id"] == str(state.customer_id)
        assert call["payload"]["items"] == state.payload_template["items"]

        stored = repository.get(state.id)
        assert stored.next_fire_date == date(2024, 4, 1)
        assert stored.occurrences_generated == 1

    def test_second_cycle_same_day_does_not_double_bill(self, engine, repository, invoice_generator):
        repository.add(make_state())
        first = engine.run_cycle(date(2024, 3, 1))
        second = engine.run_cycle(date(2024, 3, 1))

        assert first.fired == 1
        assert second.fired == 0
        assert len(invoice_generator.invoices) == 1

    def test_retry_after_crash_reuses_invoice(self, engine, repository, invoice_generator):
        """Factura generada pero cursor sin avanzar: el siguiente ciclo no duplica"""
        state = repository.add(make_state())
        invoice_generator.generate(
            {"customer_id": str(state.customer_id), "issue_date": "2024-03-01"},
            idempotency_key(state.id, date(2024, 3, 1))
        )

        summary = engine.run_cycle(date(2024, 3, 1))

        assert summary.fired == 1
        assert len(invoice_generator.invoices) == 1
        assert repository.get(state.id).next_fire_date == date(2024, 4, 1)

    def test_max_occurrences_deactivates_schedule(self, engine, repository):
        state = repository.add(make_state(max_occurrences=3, occurrences_generated=2))
        summary = engine.run_cycle(date(2024, 3, 1))

        stored = repository.get(state.id)
        assert summary.fired == 1
        assert stored.occurrences_generated == 3
        assert stored.is_active is False
        assert repository.find_due(date(2099, 1, 1)) == []
        assert engine.run_cycle(date(2099, 1, 1)).fired == 0

    def test_one_failure_does_not_block_others(self, engine, repository, invoice_generator):
        first = repository.add(make_state(next_fire_date=date(2024, 2, 1)))
        failing = repository.add(make_state(next_fire_date=date(2024, 2, 15)))
        third = repository.add(make_state(next_fire_date=date(2024, 3, 1)))
        invoice_generator.fail_for.add(str(failing.customer_id))

        summary = engine.run_cycle(date(2024, 3, 1))

        assert (summary.fired, summary.failed) == (2, 1)
        assert repository.get(first.id).next_fire_date == date(2024, 3, 1)
        assert repository.get(third.id).next_fire_date == date(2024, 4, 1)
        assert repository.get(failing.id).next_fire_date == date(2024, 2, 15)
        assert repository.get(failing.id).occurrences_generated == 0

        failed = [o for o in summary.outcomes if o.outcome == CycleOutcomeType.FAILED]
        assert failed[0].schedule_id == failing.id
        assert "generation failed" in failed[0].error

    def test_missed_periods_catch_up_one_per_cycle(self, engine, repository):
        state = repository.add(make_state(next_fire_date=date(2024, 1, 1)))
        today = date(2024, 3, 15)

        assert engine.run_cycle(today).outcomes[0].fire_date == date(2024, 1, 1)
        assert engine.run_cycle(today).outcomes[0].fire_date == date(2024, 2, 1)
        assert engine.run_cycle(today).outcomes[0].fire_date == date(2024, 3, 1)
        assert engine.run_cycle(today).fired == 0

        stored = repository.get(state.id)
        assert stored.occurrences_generated == 3
        assert stored.next_fire_date == date(2024, 4, 1)

    def test_lost_advance_race_counts_as_skipped(self, invoice_generator, task_queue, customers, clock):
        class RacingRepository(InMemoryRecurrenceRepository):
            def advance(self, *args, **kwargs):
                # otro worker gana el compare-and-swap justo antes
                super().advance(*args, **kwargs)
                return False

        repository = RacingRepository()
        state = repository.add(make_state())
        customers.add(CustomerContact(id=state.customer_id, name="Client", email="c@example.com", preferred_channel="email"))
        engine = RecurrenceEngine(repository, invoice_generator, task_queue, customers, clock=clock)

        summary = engine.run_cycle(date(2024, 3, 1))

        assert (summary.fired, summary.skipped) == (0, 1)
        assert task_queue.dispatched == []
        assert repository.get(state.id).occurrences_generated == 1

    def test_cadence_edit_during_generation_counts_invoice(self, repository, invoice_generator, task_queue, customers, clock):
        state = repository.add(make_state(max_occurrences=2))
        customers.add(CustomerContact(id=state.customer_id, name="Client", email="c@example.com", preferred_channel="email"))

        def switch_to_weekly():
            current = repository.get(state.id)
            repository.add(current.model_copy(update={"frequency": Frequency.WEEKLY, "next_fire_date": date(2024, 3, 8)}))

        generator = EditDuringGeneration(invoice_generator, switch_to_weekly)
        engine = RecurrenceEngine(repository, generator, task_queue, customers, clock=clock)

        summary = engine.run_cycle(date(2024, 3, 1))

        assert summary.fired == 1
        stored = repository.get(state.id)
        assert stored.occurrences_generated == 1
        assert stored.next_fire_date == date(2024, 3, 8)
        assert len(task_queue.dispatched) == 1

        assert engine.run_cycle(date(2024, 3, 8)).fired == 1
        assert engine.run_cycle(date(2024, 3, 15)).fired == 0
        assert repository.get(state.id).occurrences_generated == 2
        assert len(invoice_generator.invoices) == 2

    def test_pause_during_generation_still_advances(self, repository, invoice_generator, task_queue, clock):
        state = repository.add(make_state())

        def pause():
            repository.deactivate(state.id)

        engine = RecurrenceEngine(repository, EditDuringGeneration(invoice_generator, pause), task_queue, clock=clock)

        assert engine.run_cycle(date(2024, 3, 1)).fired == 1
        stored = repository.get(state.id)
        assert stored.occurrences_generated == 1
        assert stored.next_fire_date == date(2024, 4, 1)
        assert stored.is_active is False

    def test_collaborator_timeout_is_a_failure(self, repository, task_queue, clock):
        release = threading.Event()

        class SlowGenerator:
            def generate(self, payload, key):
                release.wait(5)
                raise AssertionError("should have timed out")

        state = repository.add(make_state())
        engine = RecurrenceEngine(
            repository, SlowGenerator(), task_queue,
            policy=RecurrencePolicy(collaborator_timeout=0.05), clock=clock
        )
        try:
            summary = engine.run_cycle(date(2024, 3, 1))
        finally:
            release.set()

        assert summary.failed == 1
        assert "timed out" in summary.outcomes[0].error
        assert repository.get(state.id).next_fire_date == date(2024, 3, 1)

    def test_repository_failure_aborts_cycle(self, invoice_generator, task_queue):
        class BrokenRepository(InMemoryRecurrenceRepository):
            def find_due(self, today):
                raise RepositoryUnavailable("connection refused")

        engine = RecurrenceEngine(BrokenRepository(), invoice_generator, task_queue)
        with pytest.raises(RepositoryUnavailable):
            engine.run_cycle(date(2024, 3, 1))

    def test_parallel_processing(self, repository, invoice_generator, task_queue, clock):
        for _ in range(6):
            repository.add(make_state())
        engine = RecurrenceEngine(
            repository, invoice_generator, task_queue,
            policy=RecurrencePolicy(max_workers=4), clock=clock
        )
        assert engine.run_cycle(date(2024, 3, 1)).fired == 6
        assert len(invoice_generator.invoices) == 6

    def test_run_single(self, engine, repository):
        target = repository.add(make_state())
        other = repository.add(make_state())

        summary = engine.run_single(target.id, date(2024, 3, 1))

        assert summary.fired == 1
        assert repository.get(other.id).occurrences_generated == 0

    def test_run_single_unknown_schedule(self, engine):
        with pytest.raises(ScheduleNotFound):
            engine.run_single(uuid4(), date(2024, 3, 1))


class TestNotifications:

    def test_notification_is_enqueued_with_delay(self, engine, repository, customers, task_queue):
        state = repository.add(make_state())
        customers.add(CustomerContact(
            id=state.customer_id, name="Client", email="client@example.com", preferred_channel="email"
        ))

        engine.run_cycle(date(2024, 3, 1))

        assert len(task_queue.dispatched) == 1
        task = task_queue.dispatched[0]
        assert task.task_name == "communications.send_communication"
        assert task.countdown == 300
        assert task.kwargs["channel"] == "email"
        assert task.kwargs["recipient"] == "client@example.com"
        assert "INV-000001" in task.kwargs["message"]
        assert task.kwargs["metadata"]["recurring_schedule_id"] == str(state.id)

    def test_message_uses_customer_language(self, engine, repository, customers, task_queue):
        state = repository.add(make_state())
        customers.add(CustomerContact(
            id=state.customer_id, name="مشتری", phone="+989121234567",
            preferred_channel="sms", preferred_language="fa"
        ))

        engine.run_cycle(date(2024, 3, 1))

        task = task_queue.dispatched[0]
        assert task.kwargs["channel"] == "sms"
        assert task.kwargs["recipient"] == "+989121234567"
        assert task.kwargs["message"].startswith("فاکتور")

    def test_no_channel_no_notification(self, engine, repository, customers, task_queue):
        state = repository.add(make_state())
        customers.add(CustomerContact(id=state.customer_id, name="Client", email="client@example.com"))

        assert engine.run_cycle(date(2024, 3, 1)).fired == 1
        assert task_queue.dispatched == []

    def test_enqueue_failure_does_not_undo_invoice(self, repository, invoice_generator, customers, clock):
        class BrokenQueue(InMemoryTaskQueue):
            def enqueue(self, *args, **kwargs):
                raise ConnectionError("broker down")

        state = repository.add(make_state())
        customers.add(CustomerContact(id=state.customer_id, name="Client", email="c@example.com", preferred_channel="email"))
        engine = RecurrenceEngine(repository, invoice_generator, BrokenQueue(), customers, clock=clock)

        summary = engine.run_cycle(date(2024, 3, 1))

        assert summary.fired == 1
        assert repository.get(state.id).occurrences_generated == 1


class TestEngineWithDatabase:
    """Ciclo completo contra la base de datos"""

    def test_cycle_generates_one_invoice(self, session_factory, make_customer, task_queue, clock, sample_items):
        customer = make_customer()
        with session_factory.begin() as db:
            schedule = RecurringSchedule(
                customer_id=customer.id,
                name="Jewelry insurance",
                frequency=Frequency.MONTHLY,
                interval=1,
                start_date=date(2024, 1, 1),
                next_fire_date=date(2024, 3, 1),
                occurrences_generated=0,
                is_active=True,
                payload_template={"items": sample_items},
            )
            db.add(schedule)

        engine = RecurrenceEngine(
            SqlRecurrenceRepository(session_factory),
            SqlInvoiceGenerator(session_factory),
            task_queue,
            SqlCustomerDirectory(session_factory),
            clock=clock
        )
        assert engine.run_cycle(date(2024, 3, 1)).fired == 1
        assert engine.run_cycle(date(2024, 3, 1)).fired == 0

        with session_factory() as db:
            invoices = db.query(Invoice).all()
            assert len(invoices) == 1
            assert invoices[0].number == "INV-000001"
            assert invoices[0].idempotency_key == f"recurring:{schedule.id}:2024-03-01"
            assert invoices[0].issue_date == date(2024, 3, 1)
            assert invoices[0].total_amount == Decimal("500.00")
            stored = db.get(RecurringSchedule, schedule.id)
            assert stored.next_fire_date == date(2024, 4, 1)

        assert task_queue.dispatched[0].kwargs["recipient"] == "client@example.com"

    def test_service_edit_during_generation_is_counted(self, session_factory, db_session, make_customer, task_queue, clock):
        customer = make_customer()
        service = RecurringScheduleService(db_session)
        schedule = service.create_schedule(ScheduleCreate(
            customer_id=customer.id,
            name="Jewelry insurance",
            frequency=Frequency.MONTHLY,
            start_date=date(2024, 1, 1),
            next_fire_date=date(2024, 3, 1),
            max_occurrences=2,
            payload_template={"amount": "80.00"},
        ))
        generator = EditDuringGeneration(
            SqlInvoiceGenerator(session_factory),
            lambda: service.update_schedule(schedule.id, ScheduleUpdate(frequency=Frequency.WEEKLY))
        )
        repository = SqlRecurrenceRepository(session_factory)
        engine = RecurrenceEngine(repository, generator, task_queue, SqlCustomerDirectory(session_factory), clock=clock)

        assert engine.run_cycle(date(2024, 3, 1)).fired == 1
        stored = repository.get(schedule.id)
        assert stored.frequency == Frequency.WEEKLY
        assert stored.next_fire_date == date(2024, 3, 8)
        assert stored.occurrences_generated == 1

        assert engine.run_cycle(date(2024, 3, 8)).fired == 1
        assert engine.run_cycle(date(2024, 3, 15)).fired == 0
        stored = repository.get(schedule.id)
        assert stored.occurrences_generated == 2
        assert stored.is_active is False
        with session_factory() as db:
            assert db.query(Invoice).count() == 2
        assert len(task_queue.dispatched) == 2


# ===== TESTS DEL SERVICIO =====

class TestRecurringScheduleService:

    @pytest.fixture
    def customer(self, make_customer):
        return make_customer()

    def create(self, db_session, customer, **overrides):
        data = {
            "customer_id": customer.id,
            "name": "Monthly watch service",
            "frequency": Frequency.MONTHLY,
            "start_date": date(2024, 1, 31),
        }
        data.update(overrides)
        return RecurringScheduleService(db_session).create_schedule(ScheduleCreate(**data))

    def test_create_defaults_next_fire_date_to_one_period(self, db_session, customer):
        schedule = self.create(db_session, customer)
        assert schedule.next_fire_date == date(2024, 2, 29)
        assert schedule.occurrences_generated == 0
        assert schedule.is_active is True

    def test_create_with_explicit_next_fire_date(self, db_session, customer):
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 1, 31))
        assert schedule.next_fire_date == date(2024, 1, 31)

    def test_create_unknown_customer(self, db_session):
        with pytest.raises(HTTPException) as exc:
            RecurringScheduleService(db_session).create_schedule(ScheduleCreate(
                customer_id=uuid4(), name="x", start_date=date(2024, 1, 1)
            ))
        assert exc.value.status_code == 404

    def test_end_date_before_start_is_rejected(self):
        with pytest.raises(ValueError):
            ScheduleCreate(customer_id=uuid4(), name="x", start_date=date(2024, 5, 1), end_date=date(2024, 4, 1))

    def test_update_cadence_recomputes_next_fire_date(self, db_session, customer):
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        updated = RecurringScheduleService(db_session).update_schedule(
            schedule.id, ScheduleUpdate(frequency=Frequency.WEEKLY)
        )
        assert updated.frequency == Frequency.WEEKLY
        assert updated.next_fire_date == date(2024, 3, 8)

    def test_update_name_keeps_next_fire_date(self, db_session, customer):
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        updated = RecurringScheduleService(db_session).update_schedule(schedule.id, ScheduleUpdate(name="Renamed"))
        assert updated.name == "Renamed"
        assert updated.next_fire_date == date(2024, 3, 1)

    def test_update_max_occurrences_below_generated_is_rejected(self, db_session, customer):
        schedule = self.create(db_session, customer, max_occurrences=5)
        schedule.occurrences_generated = 3
        db_session.commit()

        with pytest.raises(HTTPException) as exc:
            RecurringScheduleService(db_session).update_schedule(schedule.id, ScheduleUpdate(max_occurrences=1))

        assert exc.value.status_code == 422
        stored = db_session.get(RecurringSchedule, schedule.id)
        assert stored.max_occurrences == 5
        assert stored.is_active is True

    def test_update_max_occurrences_to_generated_deactivates(self, db_session, session_factory, customer):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, max_occurrences=5, next_fire_date=date(2024, 3, 1))
        schedule.occurrences_generated = 3
        db_session.commit()

        assert service.update_schedule(schedule.id, ScheduleUpdate(max_occurrences=4)).is_active is True
        updated = service.update_schedule(schedule.id, ScheduleUpdate(max_occurrences=3))

        assert updated.max_occurrences == 3
        assert updated.is_active is False
        assert SqlRecurrenceRepository(session_factory).find_due(date(2099, 1, 1)) == []

    def test_update_after_engine_advance_is_rejected(self, db_session, session_factory, customer, clock):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        repository = SqlRecurrenceRepository(session_factory)

        # el motor avanza después de que la petición leyó el schedule
        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True

        with pytest.raises(HTTPException) as exc:
            service.update_schedule(schedule.id, ScheduleUpdate(frequency=Frequency.WEEKLY))

        assert exc.value.status_code == 409
        stored = repository.get(schedule.id)
        assert stored.frequency == Frequency.MONTHLY
        assert stored.next_fire_date == date(2024, 4, 1)
        assert stored.occurrences_generated == 1

    def test_resume_after_engine_advance_is_rejected(self, db_session, session_factory, customer, clock):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        service.pause_schedule(schedule.id)
        repository = SqlRecurrenceRepository(session_factory)
        assert repository.advance(schedule.id, date(2024, 3, 1), date(2024, 4, 1), clock()) is True

        with pytest.raises(HTTPException) as exc:
            service.resume_schedule(schedule.id, today=date(2024, 6, 10))

        assert exc.value.status_code == 409
        stored = repository.get(schedule.id)
        assert stored.is_active is False
        assert stored.next_fire_date == date(2024, 4, 1)

    def test_resume_recomputes_past_next_fire_date(self, db_session, customer):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        service.pause_schedule(schedule.id)

        resumed = service.resume_schedule(schedule.id, today=date(2024, 6, 10))

        assert resumed.is_active is True
        assert resumed.next_fire_date == date(2024, 7, 10)

    def test_resume_keeps_future_next_fire_date(self, db_session, customer):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        service.pause_schedule(schedule.id)
        assert service.resume_schedule(schedule.id, today=date(2024, 2, 1)).next_fire_date == date(2024, 3, 1)

    def test_resume_after_max_occurrences_is_rejected(self, db_session, customer):
        service = RecurringScheduleService(db_session)
        schedule = self.create(db_session, customer, max_occurrences=1)
        schedule.occurrences_generated = 1
        schedule.is_active = False
        db_session.commit()

        with pytest.raises(HTTPException) as exc:
            service.resume_schedule(schedule.id, today=date(2024, 6, 1))
        assert exc.value.status_code == 409

    def test_delete_is_soft(self, db_session, customer):
        schedule = self.create(db_session, customer)
        RecurringScheduleService(db_session).deactivate_schedule(schedule.id)
        stored = db_session.get(RecurringSchedule, schedule.id)
        assert stored is not None
        assert stored.is_active is False

    def test_list_with_filters(self, db_session, customer):
        service = RecurringScheduleService(db_session)
        self.create(db_session, customer, name="Ring cleaning")
        weekly = self.create(db_session, customer, name="Watch winding", frequency=Frequency.WEEKLY)
        service.pause_schedule(weekly.id)

        active = service.list_schedules(ScheduleFilters(active=True))
        assert active["total"] == 1
        assert active["schedules"][0].name == "Ring cleaning"

        found = service.list_schedules(ScheduleFilters(search="watch"))
        assert [s.id for s in found["schedules"]] == [weekly.id]

    def test_upcoming_and_stats(self, db_session, customer):
        service = RecurringScheduleService(db_session)
        self.create(db_session, customer, next_fire_date=date(2024, 3, 1))
        self.create(db_session, customer, next_fire_date=date(2024, 3, 5))
        self.create(db_session, customer, next_fire_date=date(2024, 5, 1))

        upcoming = service.get_upcoming(days=7, today=date(2024, 3, 1))
        assert [s.next_fire_date for s in upcoming] == [date(2024, 3, 1), date(2024, 3, 5)]

        stats = service.get_stats(today=date(2024, 3, 1))
        assert stats.total_active == 3
        assert stats.total_paused == 0
        assert stats.due_today == 1
        assert stats.due_this_week == 2
        assert stats.total_generated == 0


# ===== TESTS DE LA TAREA =====

class TestRecurringTask:

    def test_cycle_runs_under_lock(self, engine, repository, task_queue):
        repository.add(make_state())
        result = run_recurring_cycle(engine, task_queue, today=date(2024, 3, 1))
        assert result == {"status": "success", "today": "2024-03-01", "fired": 1, "skipped": 0, "failed": 0}

    def test_default_today_is_utc_date(self, engine, task_queue, monkeypatch):
        monkeypatch.setattr(
            "jewelry_erp.modules.recurring.tasks.utcnow",
            lambda: datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)
        )
        assert run_recurring_cycle(engine, task_queue)["today"] == "2024-03-01"

    def test_second_concurrent_cycle_is_skipped(self, engine, repository, task_queue, invoice_generator):
        repository.add(make_state())
        with task_queue.single_flight(cycle_lock_name(), 60) as acquired:
            assert acquired
            result = run_recurring_cycle(engine, task_queue, today=date(2024, 3, 1))

        assert result["status"] == "skipped"
        assert invoice_generator.calls == []

    def test_single_schedule_uses_its_own_lock(self, engine, repository, task_queue):
        state = repository.add(make_state())
        with task_queue.single_flight(cycle_lock_name(), 60):
            result = run_recurring_cycle(engine, task_queue, today=date(2024, 3, 1), schedule_id=str(state.id))
        assert result["fired"] == 1
        assert cycle_lock_name(str(state.id)) == f"process-recurring-invoice:{state.id}"

    def test_task_is_registered(self):
        from jewelry_erp.core.celery import celery_app
        import jewelry_erp.modules.recurring.tasks  # noqa: F401
        assert PROCESS_RECURRING_TASK in celery_app.tasks


# ===== TESTS DE ENDPOINTS =====

class TestRecurringEndpoints:

    @pytest.fixture
    def client(self, session_factory, task_queue):
        from jewelry_erp.main import app
        from jewelry_erp.database.database import get_db
        from jewelry_erp.dependencies.services import get_task_queue

        def override_get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_task_queue] = lambda: task_queue
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_create_get_and_pause(self, client, make_customer):
        customer = make_customer()
        response = client.post("/recurring-schedules/", json={
            "customer_id": str(customer.id),
            "name": "Necklace installment",
            "frequency": "monthly",
            "start_date": "2024-01-15",
            "payload_template": {"amount": "120.00"}
        })
        assert response.status_code == 201
        body = response.json()
        assert body["next_fire_date"] == "2024-02-15"

        response = client.get(f"/recurring-schedules/{body['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Necklace installment"

        response = client.post(f"/recurring-schedules/{body['id']}/pause")
        assert response.json()["is_active"] is False

    def test_unknown_schedule(self, client):
        assert client.get(f"/recurring-schedules/{uuid4()}").status_code == 404

    def test_invalid_interval(self, client, make_customer):
        customer = make_customer()
        response = client.post("/recurring-schedules/", json={
            "customer_id": str(customer.id), "name": "x", "interval": 0, "start_date": "2024-01-01"
        })
        assert response.status_code == 422

    def test_run_enqueues_cycle(self, client, task_queue):
        schedule_id = uuid4()
        response = client.post("/recurring-schedules/run", json={"today": "2024-03-01", "schedule_id": str(schedule_id)})

        assert response.status_code == 202
        assert response.json()["task_name"] == PROCESS_RECURRING_TASK
        assert task_queue.dispatched[0].kwargs == {"today": "2024-03-01", "schedule_id": str(schedule_id)}
