"""
Tests para el módulo de Operaciones Masivas

Cubren:
- Transiciones solo hacia adelante y el invariante de error_message
- Reclamación de intentos (compare-and-swap) y re-entregas
- Política de reintentos 30 s / 60 s / 120 s y plazo de 2 horas
- Reintento por ítem sin repetir los ítems completados
- Handlers de facturas, documentos y comunicaciones
- API de lotes
"""

import threading
from datetime import date, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from jewelry_erp.core.exceptions import (
    BatchNotFound, InvalidStatusTransition, RepositoryUnavailable, UnsupportedBatchKind
)
from jewelry_erp.modules.batches.coordinator import PROCESS_BATCH_TASK, BatchOperationCoordinator, BatchPolicy
from jewelry_erp.modules.batches.handlers import (
    CommunicationSendingHandler, InvoiceGenerationHandler, PdfGenerationHandler
)
from jewelry_erp.modules.batches.models import BatchKind, BatchStatus
from jewelry_erp.modules.batches.schemas import BatchFilters, BatchState, ItemResult, ItemStatus
from jewelry_erp.modules.batches.store import InMemoryBatchOperationStore, SqlBatchOperationStore
from jewelry_erp.modules.batches.tasks import batch_lock_name, run_batch_operation
from jewelry_erp.modules.customers.directory import CustomerContact, InMemoryCustomerDirectory
from jewelry_erp.modules.documents.renderer import DocumentStorage


@pytest.fixture
def store():
    return InMemoryBatchOperationStore()


@pytest.fixture
def customers():
    return InMemoryCustomerDirectory()


@pytest.fixture
def handlers(invoice_generator, renderer, dispatcher, customers, tmp_path):
    return {
        BatchKind.INVOICE_GENERATION: InvoiceGenerationHandler(invoice_generator, due_days=30),
        BatchKind.PDF_GENERATION: PdfGenerationHandler(renderer, DocumentStorage(str(tmp_path))),
        BatchKind.COMMUNICATION_SENDING: CommunicationSendingHandler(dispatcher, customers),
    }


@pytest.fixture
def coordinator(store, task_queue, handlers, clock):
    coordinator = BatchOperationCoordinator(store, task_queue, handlers, BatchPolicy(), clock=clock)
    task_queue.register(
        PROCESS_BATCH_TASK,
        lambda batch_id, attempt: run_batch_operation(coordinator, task_queue, batch_id, attempt)
    )
    return coordinator


def customer_ids(n):
    return [str(uuid4()) for _ in range(n)]


def new_batch(kind=BatchKind.INVOICE_GENERATION, items=None) -> BatchState:
    items = items or customer_ids(2)
    return BatchState(id=uuid4(), kind=kind, items=items, total_count=len(items))


# ===== TESTS DEL STORE =====

class TestBatchStore:
    """Reglas del store, en memoria y sobre la base de datos"""

    @pytest.fixture(params=["memory", "sql"])
    def any_store(self, request, session_factory):
        if request.param == "memory":
            return InMemoryBatchOperationStore()
        return SqlBatchOperationStore(session_factory)

    def test_create_and_get(self, any_store):
        batch = new_batch()
        any_store.create(batch)

        stored = any_store.get(batch.id)
        assert stored.status == BatchStatus.PENDING
        assert stored.attempt == 0
        assert stored.items == batch.items
        assert stored.total_count == 2
        assert stored.error_message is None

    def test_get_unknown(self, any_store):
        with pytest.raises(BatchNotFound):
            any_store.get(uuid4())

    def test_status_moves_forward_only(self, any_store, clock):
        batch = new_batch()
        any_store.create(batch)
        assert any_store.begin_attempt(batch.id, 0, clock()) is True
        any_store.update_status(batch.id, BatchStatus.COMPLETED, completed_at=clock())

        for status in (BatchStatus.PENDING, BatchStatus.RUNNING, BatchStatus.FAILED, BatchStatus.COMPLETED):
            with pytest.raises(InvalidStatusTransition):
                any_store.update_status(batch.id, status, error_message="x" if status == BatchStatus.FAILED else None)

    def test_running_cannot_go_back_to_pending(self, any_store, clock):
        batch = new_batch()
        any_store.create(batch)
        any_store.begin_attempt(batch.id, 0, clock())
        with pytest.raises(InvalidStatusTransition):
            any_store.update_status(batch.id, BatchStatus.PENDING)

    def test_failed_requires_error_message(self, any_store, clock):
        batch = new_batch()
        any_store.create(batch)
        any_store.begin_attempt(batch.id, 0, clock())

        with pytest.raises(ValueError):
            any_store.update_status(batch.id, BatchStatus.FAILED)
        with pytest.raises(ValueError):
            any_store.update_status(batch.id, BatchStatus.COMPLETED, error_message="not allowed")

        failed = any_store.update_status(batch.id, BatchStatus.FAILED, error_message="gateway down")
        assert failed.status == BatchStatus.FAILED
        assert failed.error_message == "gateway down"

    def test_begin_attempt_compare_and_swap(self, any_store, clock):
        batch = new_batch()
        any_store.create(batch)

        assert any_store.begin_attempt(batch.id, 1, clock()) is False
        assert any_store.begin_attempt(batch.id, 0, clock()) is True
        stored = any_store.get(batch.id)
        assert stored.status == BatchStatus.RUNNING
        assert stored.started_at == clock()

        # Re-entrega del intento en curso
        assert any_store.begin_attempt(batch.id, 0, clock()) is True

        assert any_store.advance_attempt(batch.id, 0) is True
        assert any_store.advance_attempt(batch.id, 0) is False
        assert any_store.begin_attempt(batch.id, 0, clock()) is False
        assert any_store.begin_attempt(batch.id, 1, clock()) is True
        assert any_store.get(batch.id).attempt == 1

    def test_record_progress(self, any_store, clock):
        batch = new_batch(items=["a", "b", "c", "d"])
        any_store.create(batch)
        any_store.begin_attempt(batch.id, 0, clock())

        any_store.record_progress(batch.id, {"a": ItemResult(status=ItemStatus.COMPLETED, data={"n": 1})}, 1, 4)
        stored = any_store.record_progress(batch.id, {"b": ItemResult(status=ItemStatus.FAILED, error="boom")}, 1, 4)

        assert stored.processed_count == 1
        assert float(stored.progress) == 25.0
        assert stored.results["a"].status == ItemStatus.COMPLETED
        assert stored.results["b"].error == "boom"
        assert stored.completed_items() == {"a"}

    def test_record_progress_requires_running(self, any_store):
        batch = new_batch()
        any_store.create(batch)
        with pytest.raises(InvalidStatusTransition):
            any_store.record_progress(batch.id, {}, 0, 2)

    def test_find_running_started_before(self, any_store, clock):
        old, recent, pending = new_batch(), new_batch(), new_batch()
        for batch in (old, recent, pending):
            any_store.create(batch)
        any_store.begin_attempt(old.id, 0, clock() - timedelta(hours=3))
        any_store.begin_attempt(recent.id, 0, clock())

        overdue = any_store.find_running_started_before(clock() - timedelta(hours=2))
        assert [b.id for b in overdue] == [old.id]

    def test_list_batches(self, any_store, clock):
        first = new_batch(kind=BatchKind.PDF_GENERATION)
        second = new_batch()
        any_store.create(first)
        any_store.create(second)
        any_store.begin_attempt(second.id, 0, clock())

        batches, total = any_store.list_batches(BatchFilters(kind=BatchKind.PDF_GENERATION))
        assert total == 1
        assert batches[0].id == first.id

        batches, total = any_store.list_batches(BatchFilters(status=BatchStatus.RUNNING))
        assert [b.id for b in batches] == [second.id]

        _, total = any_store.list_batches()
        assert total == 2

        _, total = any_store.list_batches(BatchFilters(date_to=date(2000, 1, 1)))
        assert total == 0


# ===== TESTS DEL COORDINADOR =====

class TestBatchCoordinator:

    def test_submit_creates_pending_and_enqueues_first_attempt(self, coordinator, task_queue):
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(3), {"amount": "100.00"}, "admin")

        assert batch.status == BatchStatus.PENDING
        assert batch.total_count == 3
        assert batch.created_by == "admin"
        task = task_queue.dispatched[0]
        assert task.task_name == PROCESS_BATCH_TASK
        assert task.kwargs == {"batch_id": str(batch.id), "attempt": 0}
        assert task.countdown == 0

    def test_submit_validation(self, store, task_queue, invoice_generator, clock):
        coordinator = BatchOperationCoordinator(
            store, task_queue, {BatchKind.INVOICE_GENERATION: InvoiceGenerationHandler(invoice_generator)}, clock=clock
        )
        with pytest.raises(ValueError):
            coordinator.submit(BatchKind.INVOICE_GENERATION, [])
        with pytest.raises(UnsupportedBatchKind):
            coordinator.submit(BatchKind.PDF_GENERATION, ["x"])
        assert task_queue.dispatched == []

    def test_successful_batch(self, coordinator, task_queue, invoice_generator, clock):
        customers = customer_ids(3)
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customers, {"amount": "250.00", "notes": "Eid sale"})

        task_queue.run_pending()

        done = coordinator.get_status(batch.id)
        assert done.status == BatchStatus.COMPLETED
        assert done.completed_at == clock()
        assert done.error_message is None
        assert done.processed_count == 3
        assert float(done.progress) == 100.0
        assert done.summary == {"total": 3, "succeeded": 3, "failed": 0, "attempts": 1}
        assert sorted(c["idempotency_key"] for c in invoice_generator.calls) == sorted(
            f"batch:{batch.id}:{c}" for c in customers
        )
        payload = invoice_generator.calls[0]["payload"]
        assert payload["issue_date"] == "2024-03-01"
        assert payload["due_date"] == "2024-03-31"
        assert payload["notes"] == "Eid sale"

    def test_retry_backoff_then_failed(self, coordinator, task_queue, invoice_generator):
        invoice_generator.failures = 100
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))

        task_queue.run_pending()

        assert [t.countdown for t in task_queue.dispatched] == [0, 30, 60, 120]
        assert [t.kwargs["attempt"] for t in task_queue.dispatched] == [0, 1, 2, 3]
        assert len(invoice_generator.calls) == 4

        failed = coordinator.get_status(batch.id)
        assert failed.status == BatchStatus.FAILED
        assert failed.error_message
        assert "invoice service unavailable" in failed.error_message
        assert failed.error_message.startswith("Failed after 4 attempts")
        assert failed.completed_at is not None
        assert task_queue.pending() == []

    def test_max_retries_counts_retries_after_first_attempt(self, store, task_queue, handlers, clock, invoice_generator):
        coordinator = BatchOperationCoordinator(store, task_queue, handlers, BatchPolicy(max_retries=1), clock=clock)
        task_queue.register(
            PROCESS_BATCH_TASK,
            lambda batch_id, attempt: run_batch_operation(coordinator, task_queue, batch_id, attempt)
        )
        invoice_generator.failures = 100
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))

        task_queue.run_pending()

        assert [t.kwargs["attempt"] for t in task_queue.dispatched] == [0, 1]
        assert coordinator.get_status(batch.id).status == BatchStatus.FAILED

    def test_retry_succeeds(self, coordinator, task_queue, invoice_generator):
        invoice_generator.failures = 2
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))

        task_queue.run_pending()

        done = coordinator.get_status(batch.id)
        assert done.status == BatchStatus.COMPLETED
        assert done.attempt == 2
        assert done.summary["attempts"] == 3
        assert [t.countdown for t in task_queue.dispatched] == [0, 30, 60]

    def test_retry_only_reprocesses_failed_items(self, coordinator, task_queue, invoice_generator):
        customers = customer_ids(3)
        invoice_generator.fail_for.add(customers[1])
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customers)

        running = coordinator.execute(batch.id, attempt=0)
        assert running.status == BatchStatus.RUNNING
        assert running.attempt == 1
        assert running.results[customers[1]].status == ItemStatus.FAILED
        assert running.completed_items() == {customers[0], customers[2]}
        assert running.error_message is None

        invoice_generator.fail_for.clear()
        done = coordinator.execute(batch.id, attempt=1)

        assert done.status == BatchStatus.COMPLETED
        keys = [c["idempotency_key"] for c in invoice_generator.calls]
        assert keys.count(f"batch:{batch.id}:{customers[0]}") == 1
        assert keys.count(f"batch:{batch.id}:{customers[1]}") == 2
        assert done.summary["succeeded"] == 3

    def test_deadline_fails_running_batch(self, coordinator, task_queue, invoice_generator, clock):
        invoice_generator.failures = 1
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        coordinator.execute(batch.id, attempt=0)

        clock.advance(2 * 60 * 60 + 1)
        failed = coordinator.execute(batch.id, attempt=1)

        assert failed.status == BatchStatus.FAILED
        assert "Deadline" in failed.error_message
        assert len(invoice_generator.calls) == 1

    def test_retry_past_deadline_fails_immediately(self, coordinator, task_queue, invoice_generator, clock):
        invoice_generator.failures = 10
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        coordinator.store.begin_attempt(batch.id, 0, clock())
        clock.advance(2 * 60 * 60 - 10)

        failed = coordinator.execute(batch.id, attempt=0)

        assert failed.status == BatchStatus.FAILED
        assert "Deadline" in failed.error_message
        assert len(task_queue.dispatched) == 1

    def test_expire_overdue(self, coordinator, invoice_generator, clock):
        invoice_generator.failures = 1
        overdue = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        coordinator.execute(overdue.id, attempt=0)
        clock.advance(60 * 60)
        recent = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        coordinator.store.begin_attempt(recent.id, 0, clock())

        clock.advance(60 * 60 + 1)
        assert coordinator.expire_overdue() == 1

        assert coordinator.get_status(overdue.id).status == BatchStatus.FAILED
        assert coordinator.get_status(recent.id).status == BatchStatus.RUNNING

    def test_collaborator_timeout_is_a_failed_attempt(self, store, task_queue, clock):
        release = threading.Event()

        class SlowGenerator:
            def generate(self, payload, key):
                release.wait(5)

        coordinator = BatchOperationCoordinator(
            store, task_queue,
            {BatchKind.INVOICE_GENERATION: InvoiceGenerationHandler(SlowGenerator())},
            BatchPolicy(collaborator_timeout=0.05),
            clock=clock
        )
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        try:
            result = coordinator.execute(batch.id, attempt=0)
        finally:
            release.set()

        assert result.status == BatchStatus.RUNNING
        assert result.attempt == 1
        assert "timed out" in next(iter(result.results.values())).error
        assert task_queue.dispatched[-1].countdown == 30

    def test_stale_attempt_is_ignored(self, coordinator, invoice_generator):
        invoice_generator.failures = 1
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        coordinator.execute(batch.id, attempt=0)
        calls = len(invoice_generator.calls)

        result = coordinator.execute(batch.id, attempt=0)

        assert result.attempt == 1
        assert len(invoice_generator.calls) == calls

    def test_terminal_batch_is_not_reprocessed(self, coordinator, invoice_generator):
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(2))
        coordinator.execute(batch.id, attempt=0)

        again = coordinator.execute(batch.id, attempt=0)

        assert again.status == BatchStatus.COMPLETED
        assert len(invoice_generator.calls) == 2

    def test_redelivered_attempt_resumes(self, coordinator, invoice_generator, clock):
        """Un worker murió a mitad del intento 0: la re-entrega termina el trabajo"""
        customers = customer_ids(2)
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customers)
        coordinator.store.begin_attempt(batch.id, 0, clock())
        coordinator.store.record_progress(
            batch.id, {customers[0]: ItemResult(status=ItemStatus.COMPLETED)}, 1, 2
        )

        done = coordinator.execute(batch.id, attempt=0)

        assert done.status == BatchStatus.COMPLETED
        assert [c["payload"]["customer_id"] for c in invoice_generator.calls] == [customers[1]]

    def test_repository_failure_aborts_attempt(self, store, task_queue, clock):
        class BrokenDirectory(InMemoryCustomerDirectory):
            def get_invoice_recipient(self, invoice_id):
                raise RepositoryUnavailable("connection reset")

        coordinator = BatchOperationCoordinator(
            store, task_queue,
            {BatchKind.COMMUNICATION_SENDING: CommunicationSendingHandler(None, BrokenDirectory())},
            clock=clock
        )
        batch = coordinator.submit(BatchKind.COMMUNICATION_SENDING, [str(uuid4())])

        with pytest.raises(RepositoryUnavailable):
            coordinator.execute(batch.id, attempt=0)

        stored = store.get(batch.id)
        assert stored.status == BatchStatus.RUNNING
        assert stored.error_message is None
        assert stored.results == {}

    def test_mark_failed(self, coordinator):
        pending = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        failed = coordinator.mark_failed(pending.id, "wrong customer list")

        assert failed.status == BatchStatus.FAILED
        assert "wrong customer list" in failed.error_message
        with pytest.raises(InvalidStatusTransition):
            coordinator.mark_failed(pending.id, "again")

    def test_operator_failure_wins_over_running_attempt(self, coordinator, store, invoice_generator, clock):
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))

        class ClosingGenerator:
            def generate(self, payload, key):
                coordinator.mark_failed(batch.id, "stopped by operator")
                return invoice_generator.generate(payload, key)

        coordinator.handlers[BatchKind.INVOICE_GENERATION] = InvoiceGenerationHandler(ClosingGenerator())
        result = coordinator.execute(batch.id, attempt=0)

        assert result.status == BatchStatus.FAILED
        assert "stopped by operator" in result.error_message


# ===== TESTS DE HANDLERS =====

class TestBatchHandlers:

    def test_pdf_batch_stores_documents(self, coordinator, renderer, tmp_path):
        invoices = [str(uuid4()), str(uuid4())]
        batch = coordinator.submit(BatchKind.PDF_GENERATION, invoices, {"language": "fa"})

        done = coordinator.execute(batch.id)

        assert done.status == BatchStatus.COMPLETED
        assert renderer.calls == invoices
        for invoice_id in invoices:
            path = Path(done.results[invoice_id].data["path"])
            assert path.exists()
            assert path.parent == tmp_path / str(batch.id)

    def test_pdf_render_failure_is_retried(self, coordinator, renderer):
        invoices = [str(uuid4())]
        renderer.fail_for.add(invoices[0])
        batch = coordinator.submit(BatchKind.PDF_GENERATION, invoices)

        result = coordinator.execute(batch.id)

        assert result.status == BatchStatus.RUNNING
        assert result.attempt == 1

    def test_communication_batch(self, coordinator, customers, dispatcher):
        contact = customers.add(CustomerContact(
            id=uuid4(), name="Client", email="client@example.com", phone="+989121234567", preferred_language="fa"
        ))
        invoice_id = uuid4()
        customers.link_invoice(invoice_id, "INV-000042", contact.id)

        batch = coordinator.submit(BatchKind.COMMUNICATION_SENDING, [invoice_id], {"method": "email", "subject": "Invoice"})
        done = coordinator.execute(batch.id)

        assert done.status == BatchStatus.COMPLETED
        sent = dispatcher.sent[0]
        assert sent["channel"] == "email"
        assert sent["recipient"] == "client@example.com"
        assert "INV-000042" in sent["message"]
        assert sent["metadata"]["subject"] == "Invoice"
        assert done.results[str(invoice_id)].data["provider_message_id"] == "msg-1"

    def test_communication_custom_message_by_sms(self, coordinator, customers, dispatcher):
        contact = customers.add(CustomerContact(id=uuid4(), name="Client", phone="+989121234567"))
        invoice_id = uuid4()
        customers.link_invoice(invoice_id, "INV-000007", contact.id)

        batch = coordinator.submit(
            BatchKind.COMMUNICATION_SENDING, [invoice_id], {"method": "sms", "message": "Your order is ready"}
        )
        coordinator.execute(batch.id)

        assert dispatcher.sent == [{
            "channel": "sms",
            "recipient": "+989121234567",
            "message": "Your order is ready",
            "metadata": {
                "subject": None,
                "invoice_id": str(invoice_id),
                "invoice_number": "INV-000007",
                "batch_operation_id": str(batch.id),
            },
        }]

    def test_missing_recipient_fails_item(self, coordinator, customers, dispatcher):
        contact = customers.add(CustomerContact(id=uuid4(), name="No email"))
        invoice_id = uuid4()
        customers.link_invoice(invoice_id, "INV-000001", contact.id)

        batch = coordinator.submit(BatchKind.COMMUNICATION_SENDING, [invoice_id], {"method": "email"})
        result = coordinator.execute(batch.id)

        assert "no email address" in result.results[str(invoice_id)].error
        assert dispatcher.sent == []


# ===== TESTS DE LA TAREA =====

class TestBatchTask:

    def test_runs_attempt(self, coordinator, task_queue):
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))
        result = run_batch_operation(coordinator, task_queue, str(batch.id), 0)
        assert result["status"] == "completed"
        assert result["error"] is None

    def test_locked_batch_is_deferred(self, coordinator, task_queue, invoice_generator):
        batch = coordinator.submit(BatchKind.INVOICE_GENERATION, customer_ids(1))

        with task_queue.single_flight(batch_lock_name(str(batch.id)), 60):
            result = run_batch_operation(coordinator, task_queue, str(batch.id), 0)

        assert result["status"] == "deferred"
        assert invoice_generator.calls == []
        assert task_queue.dispatched[-1].kwargs == {"batch_id": str(batch.id), "attempt": 0}
        assert task_queue.dispatched[-1].countdown == 30

        task_queue.run_pending()
        assert coordinator.get_status(batch.id).status == BatchStatus.COMPLETED

    def test_tasks_are_registered(self):
        from jewelry_erp.core.celery import celery_app
        assert PROCESS_BATCH_TASK in celery_app.tasks
        assert "batches.expire_overdue_batches" in celery_app.tasks


# ===== TESTS DE ENDPOINTS =====

class TestBatchEndpoints:

    @pytest.fixture
    def client(self, coordinator):
        from jewelry_erp.main import app
        from jewelry_erp.dependencies.services import get_batch_coordinator

        app.dependency_overrides[get_batch_coordinator] = lambda: coordinator
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_create_and_query(self, client, task_queue):
        response = client.post("/batch-operations/invoices", json={
            "customer_ids": [str(uuid4()), str(uuid4())],
            "amount": "99.50",
            "created_by": "operator@shop"
        })
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_count"] == 2

        task_queue.run_pending()

        response = client.get(f"/batch-operations/{body['id']}")
        assert response.status_code == 200
        detail = response.json()
        assert detail["status"] == "completed"
        assert detail["progress"] in ("100.00", 100.0, "100")
        assert len(detail["results"]) == 2

    def test_generic_create_validates_items(self, client):
        response = client.post("/batch-operations/", json={"kind": "pdf_generation", "items": []})
        assert response.status_code == 422

    def test_unknown_batch(self, client):
        assert client.get(f"/batch-operations/{uuid4()}").status_code == 404

    def test_mark_failed_endpoint(self, client):
        response = client.post("/batch-operations/pdfs", json={"invoice_ids": [str(uuid4())]})
        batch_id = response.json()["id"]

        response = client.post(f"/batch-operations/{batch_id}/fail", json={"reason": "duplicate request"})
        assert response.status_code == 200
        assert response.json()["status"] == "failed"

        response = client.post(f"/batch-operations/{batch_id}/fail", json={"reason": "again"})
        assert response.status_code == 409

    def test_history(self, client):
        client.post("/batch-operations/pdfs", json={"invoice_ids": [str(uuid4())]})
        client.post("/batch-operations/communications", json={"invoice_ids": [str(uuid4())], "method": "sms"})

        response = client.get("/batch-operations/", params={"kind": "communication_sending"})
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["batches"][0]["kind"] == "communication_sending"
