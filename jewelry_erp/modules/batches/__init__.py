"""
Módulo de Operaciones Masivas

Generación de facturas, documentos y envío de comunicaciones en lote, con
reintentos (30 s, 60 s, 120 s), plazo máximo de 2 horas e historial.

- store.py: persistencia con transiciones solo hacia adelante
- handlers.py: despacho por tipo de lote, con resultado por ítem
- coordinator.py: intentos, reintentos y cierre del lote
- router.py / tasks.py: API y tareas de Celery
"""

from .models import BatchOperation, BatchKind, BatchStatus
from .schemas import BatchState, ItemResult, ItemStatus
from .store import BatchOperationStore, SqlBatchOperationStore, InMemoryBatchOperationStore
from .handlers import BatchHandler, BatchDispatchError
from .coordinator import BatchOperationCoordinator, BatchPolicy

__all__ = [
    "BatchOperation", "BatchKind", "BatchStatus",
    "BatchState", "ItemResult", "ItemStatus",
    "BatchOperationStore", "SqlBatchOperationStore", "InMemoryBatchOperationStore",
    "BatchHandler", "BatchDispatchError",
    "BatchOperationCoordinator", "BatchPolicy"
]
