"""
Tests del directorio de clientes
"""

from uuid import uuid4

from jewelry_erp.modules.customers.directory import CustomerContact, SqlCustomerDirectory
from jewelry_erp.modules.invoices.generator import SqlInvoiceGenerator


class TestCustomerContact:

    def test_recipient_for(self):
        contact = CustomerContact(id=uuid4(), name="Client", email="c@example.com", phone="+98912")
        assert contact.recipient_for("email") == "c@example.com"
        assert contact.recipient_for("sms") == "+98912"
        assert contact.recipient_for("whatsapp") == "+98912"
        assert contact.recipient_for("fax") is None

    def test_notification_target(self):
        assert CustomerContact(id=uuid4(), name="A", phone="+98912", preferred_channel="sms").notification_target == ("sms", "+98912")
        assert CustomerContact(id=uuid4(), name="B", preferred_channel="email").notification_target is None
        assert CustomerContact(id=uuid4(), name="C", email="c@example.com").notification_target is None


class TestSqlCustomerDirectory:

    def test_get_contact(self, session_factory, make_customer):
        customer = make_customer(name="Client", preferred_language="fa")
        contact = SqlCustomerDirectory(session_factory).get_contact(customer.id)

        assert contact.name == "Client"
        assert contact.preferred_language == "fa"
        assert SqlCustomerDirectory(session_factory).get_contact(uuid4()) is None

    def test_get_invoice_recipient(self, session_factory, make_customer):
        customer = make_customer(email="owner@example.com")
        invoice = SqlInvoiceGenerator(session_factory).generate(
            {"customer_id": str(customer.id), "amount": "10"}, "key"
        )
        directory = SqlCustomerDirectory(session_factory)

        target = directory.get_invoice_recipient(str(invoice.id))

        assert target.invoice_number == invoice.number
        assert target.contact.id == customer.id
        assert target.contact.recipient_for("email") == "owner@example.com"
        assert directory.get_invoice_recipient(uuid4()) is None
