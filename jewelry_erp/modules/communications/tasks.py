"""
Tareas asíncronas de Celery para el envío de comunicaciones.
"""
import logging
from typing import Any, Dict, Optional

from jewelry_erp.core.celery import celery_app
from jewelry_erp.core.exceptions import CollaboratorError
from jewelry_erp.dependencies.services import build_dispatcher

logger = logging.getLogger(__name__)

SEND_COMMUNICATION_TASK = "communications.send_communication"


@celery_app.task(name=SEND_COMMUNICATION_TASK, bind=True, max_retries=3)
def send_communication(
    self,
    channel: str,
    recipient: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Enviar una notificación a un cliente.

    Best effort: agotados los reintentos el fallo solo queda registrado.
    """
    try:
        result = build_dispatcher().send(channel, recipient, message, metadata or {})
        logger.info(f"{channel} notification sent to {recipient}")
        return {"status": "success", "channel": channel, "recipient": recipient,
                "provider_message_id": result.provider_message_id}

    except CollaboratorError as exc:
        logger.error(f"{channel} notification to {recipient} failed: {str(exc)}")

        # Retry with exponential backoff
        if exc.retryable and self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        # Final failure
        return {"status": "failed", "error": str(exc), "channel": channel, "recipient": recipient}
