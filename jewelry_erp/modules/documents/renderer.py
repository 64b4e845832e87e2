"""
Renderizado de documentos de factura para los lotes de PDF.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import UUID
import logging

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.exc import DBAPIError

from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.modules.customers.models import Customer
from jewelry_erp.modules.invoices.models import Invoice

logger = logging.getLogger(__name__)


class PDFRenderer(ABC):
    @abstractmethod
    def render(self, invoice_id, options: Optional[Dict[str, Any]] = None) -> bytes:
        """Renderizar el documento de la factura ``invoice_id``."""


class TemplateInvoiceRenderer(PDFRenderer):
    """
    Renderiza el documento de la factura desde un template Jinja2.

    El motor de maquetación a PDF se conecta detrás de esta interfaz; este
    renderer produce el documento fuente codificado en UTF-8.
    """

    def __init__(self, session_factory, business_name: str = "", template_name: str = "invoice.html"):
        self.session_factory = session_factory
        self.business_name = business_name
        self.template_name = template_name
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def render(self, invoice_id, options=None) -> bytes:
        options = options or {}
        try:
            with self.session_factory() as db:
                invoice = db.get(Invoice, UUID(str(invoice_id)))
                if not invoice:
                    raise CollaboratorError(f"Invoice {invoice_id} not found", retryable=False)
                customer = db.get(Customer, invoice.customer_id)
                context = {
                    "business_name": self.business_name,
                    "invoice": invoice,
                    "customer": customer,
                    "language": options.get("language") or invoice.language,
                }
                html = self.jinja_env.get_template(self.template_name).render(**context)
        except DBAPIError as e:
            raise CollaboratorError(f"Could not load invoice {invoice_id}: {e}") from e

        return html.encode("utf-8")


class DocumentStorage:
    """Guarda los documentos generados en un directorio local."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def save(self, batch_id, invoice_id, content: bytes) -> str:
        target_dir = self.base_dir / str(batch_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{invoice_id}.html"
        path.write_bytes(content)
        return str(path)
