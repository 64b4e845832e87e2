"""
Módulo de Comunicaciones: envío de notificaciones a clientes por canal.
"""

from .dispatcher import CommunicationDispatcher, ChannelRouter, DispatchResult
from .email_channel import EmailDispatcher

__all__ = [
    "CommunicationDispatcher",
    "ChannelRouter",
    "DispatchResult",
    "EmailDispatcher"
]
