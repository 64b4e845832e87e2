"""
Tests del módulo de Comunicaciones

Cubren el enrutamiento por canal, el canal de correo, los textos por
idioma y la tarea de envío de notificaciones.
"""

import smtplib

import pytest

from jewelry_erp.core.exceptions import CollaboratorError, UnsupportedChannel
from jewelry_erp.modules.communications import tasks as communication_tasks
from jewelry_erp.modules.communications.dispatcher import ChannelRouter
from jewelry_erp.modules.communications.email_channel import EmailDispatcher
from jewelry_erp.modules.communications.messages import invoice_generated_message, invoice_ready_message


class FakeSMTP:
    def __init__(self):
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def sendmail(self, from_addr, to_addrs, msg):
        self.sent.append((from_addr, to_addrs, msg))


@pytest.fixture
def email_dispatcher():
    return EmailDispatcher(
        smtp_server="smtp.test",
        smtp_port=587,
        from_email="billing@goldshop.test",
        from_name="Gold Shop",
        business_name="Gold Shop"
    )


class TestChannelRouter:

    def test_routes_by_channel(self, dispatcher):
        router = ChannelRouter({"sms": dispatcher})
        result = router.send("sms", "+989121234567", "Hello")

        assert result.recipient == "+989121234567"
        assert dispatcher.sent[0]["channel"] == "sms"

    def test_unknown_channel(self, dispatcher):
        router = ChannelRouter({"email": dispatcher})
        with pytest.raises(UnsupportedChannel) as exc:
            router.send("whatsapp", "+989121234567", "Hello")
        assert exc.value.retryable is False

    def test_register(self, dispatcher):
        router = ChannelRouter()
        router.register("whatsapp", dispatcher)
        router.send("whatsapp", "+989121234567", "Hello")
        assert len(dispatcher.sent) == 1


class TestEmailDispatcher:

    def test_build_message(self, email_dispatcher):
        msg = email_dispatcher.build_message(
            "client@example.com", "Your invoice #INV-000001 is ready.", {"subject": "Invoice", "invoice_number": "INV-000001"}
        )

        assert msg["Subject"] == "Invoice"
        assert msg["To"] == "client@example.com"
        assert msg["From"] == "Gold Shop <billing@goldshop.test>"
        html = email_dispatcher.render("Your invoice is ready.", {"invoice_number": "INV-000001"})
        assert "INV-000001" in html
        assert "Gold Shop" in html

    def test_default_subject(self, email_dispatcher):
        msg = email_dispatcher.build_message("client@example.com", "New invoice generated", {})
        assert msg["Subject"] == "Gold Shop: New invoice generated"

    def test_send(self, email_dispatcher, monkeypatch):
        server = FakeSMTP()
        monkeypatch.setattr(email_dispatcher, "_create_smtp_connection", lambda: server)

        result = email_dispatcher.send("email", "client@example.com", "Hello", {"subject": "Hi"})

        assert result.success is True
        assert result.channel == "email"
        from_addr, to_addrs, _ = server.sent[0]
        assert from_addr == "billing@goldshop.test"
        assert to_addrs == ["client@example.com"]

    def test_smtp_failure_is_collaborator_error(self, email_dispatcher, monkeypatch):
        def refuse():
            raise smtplib.SMTPConnectError(421, "service not available")

        monkeypatch.setattr(email_dispatcher, "_create_smtp_connection", refuse)

        with pytest.raises(CollaboratorError) as exc:
            email_dispatcher.send("email", "client@example.com", "Hello")
        assert exc.value.retryable is True


class TestMessages:

    def test_english(self):
        assert invoice_generated_message("INV-000010") == "New invoice #INV-000010 has been generated for you."
        assert invoice_ready_message("INV-000010", "en") == "Your invoice #INV-000010 is ready."

    def test_persian(self):
        assert "INV-000010" in invoice_generated_message("INV-000010", "fa")
        assert invoice_ready_message("INV-000010", "fa").startswith("فاکتور")

    def test_unknown_language_falls_back_to_english(self):
        assert invoice_ready_message("INV-000010", "de") == invoice_ready_message("INV-000010", "en")


class TestSendCommunicationTask:

    def test_success(self, dispatcher, monkeypatch):
        monkeypatch.setattr(communication_tasks, "build_dispatcher", lambda: ChannelRouter({"email": dispatcher}))

        result = communication_tasks.send_communication.apply(kwargs={
            "channel": "email",
            "recipient": "client@example.com",
            "message": "New invoice",
            "metadata": {"invoice_number": "INV-000001"},
        }).get()

        assert result["status"] == "success"
        assert result["provider_message_id"] == "msg-1"
        assert dispatcher.sent[0]["metadata"] == {"invoice_number": "INV-000001"}

    def test_non_retryable_failure_is_reported(self, monkeypatch):
        monkeypatch.setattr(communication_tasks, "build_dispatcher", lambda: ChannelRouter({}))

        result = communication_tasks.send_communication.apply(kwargs={
            "channel": "sms",
            "recipient": "+989121234567",
            "message": "New invoice",
        }).get()

        assert result["status"] == "failed"
        assert "Unsupported communication channel" in result["error"]
