"""
Módulo de Clientes: datos de contacto y preferencias de comunicación.
"""

from .models import Customer, CommunicationChannel
from .directory import CustomerContact, CustomerDirectory, SqlCustomerDirectory, InMemoryCustomerDirectory

__all__ = [
    "Customer",
    "CommunicationChannel",
    "CustomerContact",
    "CustomerDirectory",
    "SqlCustomerDirectory",
    "InMemoryCustomerDirectory"
]
