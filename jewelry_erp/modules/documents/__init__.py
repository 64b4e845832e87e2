"""
Módulo de Documentos: renderizado y almacenamiento de documentos de factura.
"""

from .renderer import PDFRenderer, TemplateInvoiceRenderer, DocumentStorage

__all__ = ["PDFRenderer", "TemplateInvoiceRenderer", "DocumentStorage"]
