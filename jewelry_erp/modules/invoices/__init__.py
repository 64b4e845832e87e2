"""
Módulo de Facturación (Invoices)

Facturas en borrador generadas por la facturación recurrente y los lotes.
La clave de idempotencia garantiza una sola factura por clave.

Tablas principales:
- invoices: Facturas
- invoice_sequences: Secuencia de numeración
"""

from .models import Invoice, InvoiceSequence, InvoiceStatus
from .generator import InvoiceGenerator, SqlInvoiceGenerator, GeneratedInvoice

__all__ = [
    "Invoice", "InvoiceSequence", "InvoiceStatus",
    "InvoiceGenerator", "SqlInvoiceGenerator", "GeneratedInvoice"
]
