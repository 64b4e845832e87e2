"""
Tests del renderizado y almacenamiento de documentos de factura.
"""

from pathlib import Path
from uuid import uuid4

import pytest

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.modules.documents.renderer import DocumentStorage, TemplateInvoiceRenderer
from jewelry_erp.modules.invoices.generator import SqlInvoiceGenerator


@pytest.fixture
def renderer_with_db(session_factory):
    return TemplateInvoiceRenderer(session_factory, business_name="Gold Shop")


class TestTemplateInvoiceRenderer:

    def test_render(self, renderer_with_db, session_factory, make_customer, sample_items):
        customer = make_customer(name="Parisa Jewelers")
        invoice = SqlInvoiceGenerator(session_factory).generate(
            {"customer_id": str(customer.id), "items": sample_items, "issue_date": "2024-03-01"}, "key"
        )

        html = renderer_with_db.render(invoice.id, {"language": "fa"}).decode("utf-8")

        assert invoice.number in html
        assert "Parisa Jewelers" in html
        assert "Gold ring 18k" in html
        assert "500.00" in html
        assert 'lang="fa"' in html

    def test_missing_invoice(self, renderer_with_db):
        with pytest.raises(CollaboratorError) as exc:
            renderer_with_db.render(uuid4())
        assert exc.value.retryable is False


class TestDocumentStorage:

    def test_save(self, tmp_path):
        storage = DocumentStorage(str(tmp_path))
        batch_id, invoice_id = uuid4(), uuid4()

        path = Path(storage.save(batch_id, invoice_id, b"<html></html>"))

        assert path == tmp_path / str(batch_id) / f"{invoice_id}.html"
        assert path.read_bytes() == b"<html></html>"
