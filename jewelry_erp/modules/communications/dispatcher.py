"""
Envío de comunicaciones a clientes (email, SMS, WhatsApp).

El transporte concreto de cada canal queda fuera de este módulo: aquí se
define el contrato y el enrutamiento por canal.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from pydantic import BaseModel, Field

from jewelry_erp.common.mixins import utcnow
from jewelry_erp.core.exceptions import UnsupportedChannel

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    channel: str
    recipient: str
    success: bool = True
    provider_message_id: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None


class CommunicationDispatcher(ABC):
    @abstractmethod
    def send(self, channel: str, recipient: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """Enviar ``message`` a ``recipient``; lanza CollaboratorError si falla."""


class ChannelRouter(CommunicationDispatcher):
    """Enruta cada canal al dispatcher registrado para él."""

    def __init__(self, dispatchers: Optional[Dict[str, CommunicationDispatcher]] = None):
        self.dispatchers: Dict[str, CommunicationDispatcher] = dict(dispatchers or {})

    def register(self, channel: str, dispatcher: CommunicationDispatcher) -> None:
        self.dispatchers[channel] = dispatcher

    def send(self, channel, recipient, message, metadata=None) -> DispatchResult:
        dispatcher = self.dispatchers.get(channel)
        if dispatcher is None:
            raise UnsupportedChannel(channel)
        logger.debug(f"Routing {channel} message to {recipient}")
        return dispatcher.send(channel, recipient, message, metadata or {})
