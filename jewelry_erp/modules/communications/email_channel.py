import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, Optional
from pathlib import Path
import logging
from jinja2 import Environment, FileSystemLoader, select_autoescape

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.modules.communications.dispatcher import CommunicationDispatcher, DispatchResult

logger = logging.getLogger(__name__)


class EmailDispatcher(CommunicationDispatcher):
    """
    Canal de correo electrónico con soporte para templates Jinja2.
    """

    def __init__(
        self,
        smtp_server: str,
        smtp_port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        from_name: str = "",
        business_name: str = "",
        template_name: str = "notification_email.html"
    ):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.business_name = business_name
        self.template_name = template_name

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    @classmethod
    def from_settings(cls, settings) -> "EmailDispatcher":
        return cls(
            smtp_server=settings.EMAIL_SMTP_SERVER,
            smtp_port=settings.EMAIL_SMTP_PORT,
            username=settings.EMAIL_USERNAME,
            password=settings.EMAIL_PASSWORD,
            use_tls=settings.EMAIL_USE_TLS,
            from_email=settings.EMAIL_FROM,
            from_name=settings.EMAIL_FROM_NAME,
            business_name=settings.BUSINESS_NAME,
        )

    def _create_smtp_connection(self):
        """Crear conexión SMTP segura."""
        if self.use_tls:
            context = ssl.create_default_context()
            server = smtplib.SMTP(self.smtp_server, self.smtp_port)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port)

        if self.username:
            server.login(self.username, self.password)
        return server

    def render(self, message: str, metadata: Dict[str, Any]) -> str:
        """
        Renderizar el cuerpo HTML del correo.

        Args:
            message: Texto principal del mensaje
            metadata: Variables adicionales (invoice_number, subject...)

        Returns:
            HTML renderizado del template
        """
        template = self.jinja_env.get_template(self.template_name)
        return template.render(message=message, business_name=self.business_name, **metadata)

    def build_message(self, recipient: str, message: str, metadata: Dict[str, Any]) -> MIMEMultipart:
        subject = metadata.get("subject") or f"{self.business_name}: {message[:60]}"

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = recipient
        msg.attach(MIMEText(message, 'plain', 'utf-8'))
        msg.attach(MIMEText(self.render(message, metadata), 'html', 'utf-8'))
        return msg

    def send(self, channel: str, recipient: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> DispatchResult:
        metadata = dict(metadata or {})
        try:
            msg = self.build_message(recipient, message, metadata)
            with self._create_smtp_connection() as server:
                server.sendmail(self.from_email, [recipient], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {recipient}: {str(e)}")
            raise CollaboratorError(f"Email delivery to {recipient} failed: {e}") from e

        logger.info(f"Email sent successfully to {recipient}")
        return DispatchResult(channel=channel, recipient=recipient)
