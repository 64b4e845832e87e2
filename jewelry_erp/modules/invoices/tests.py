"""
Tests del generador de facturas: idempotencia, numeración y totales.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.modules.invoices.generator import SqlInvoiceGenerator, payload_total
from jewelry_erp.modules.invoices.models import Invoice, InvoiceStatus


@pytest.fixture
def generator(session_factory):
    return SqlInvoiceGenerator(session_factory, prefix="INV-", due_days=30)


class TestPayloadTotal:

    def test_amount_wins(self, sample_items):
        assert payload_total({"amount": "120.50", "items": sample_items}) == Decimal("120.50")

    def test_sum_of_items(self, sample_items):
        assert payload_total({"items": sample_items}) == Decimal("500.00")

    def test_empty(self):
        assert payload_total({}) == Decimal("0.00")


class TestSqlInvoiceGenerator:

    def test_generate(self, generator, make_customer, sample_items):
        customer = make_customer()
        invoice = generator.generate({
            "customer_id": str(customer.id),
            "items": sample_items,
            "issue_date": "2024-03-01",
            "notes": "Monthly maintenance",
        }, "schedule:abc:2024-03-01")

        assert invoice.number == "INV-000001"
        assert invoice.customer_id == customer.id
        assert invoice.total_amount == Decimal("500.00")
        assert invoice.issue_date == date(2024, 3, 1)
        assert invoice.due_date == date(2024, 3, 31)

    def test_same_key_returns_same_invoice(self, generator, make_customer, session_factory):
        customer = make_customer()
        payload = {"customer_id": str(customer.id), "amount": "80.00", "issue_date": "2024-03-01"}

        first = generator.generate(payload, "batch:1:customer")
        second = generator.generate(payload, "batch:1:customer")

        assert first.id == second.id
        assert first.number == second.number
        with session_factory() as db:
            assert db.execute(select(func.count()).select_from(Invoice)).scalar_one() == 1

    def test_numbers_are_sequential(self, generator, make_customer):
        customer = make_customer()
        numbers = [
            generator.generate({"customer_id": str(customer.id), "amount": "10"}, f"key-{n}").number
            for n in range(3)
        ]
        assert numbers == ["INV-000001", "INV-000002", "INV-000003"]

    def test_stored_as_draft(self, generator, make_customer, session_factory):
        customer = make_customer()
        generated = generator.generate(
            {"customer_id": str(customer.id), "amount": "10", "language": "fa"}, "key"
        )
        with session_factory() as db:
            invoice = db.get(Invoice, generated.id)
            assert invoice.status == InvoiceStatus.DRAFT
            assert invoice.language == "fa"
            assert invoice.idempotency_key == "key"

    def test_missing_customer_is_not_retryable(self, generator):
        with pytest.raises(CollaboratorError) as exc:
            generator.generate({"amount": "10"}, "key")
        assert exc.value.retryable is False
