"""
Task dispatch abstraction.

Jobs are delivered at least once. Callers enqueue a named task, optionally
delayed (used for batch backoff), and wrap job bodies in ``single_flight``
so that no two workers run the same logical job at the same time.

Two implementations:

- CeleryTaskQueue: Celery ``send_task`` for delivery, Redis locks for
  single-flight across the whole deployment.
- InMemoryTaskQueue: in-process worker pool with process-local locks, used
  by tests and by single-process deployments.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4
import itertools
import logging
import threading

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TaskQueue(ABC):
    @abstractmethod
    def enqueue(
        self,
        task_name: str,
        kwargs: Optional[Dict[str, Any]] = None,
        countdown: float = 0,
        queue: Optional[str] = None
    ) -> str:
        """Enviar una tarea; ``countdown`` retrasa la entrega en segundos."""

    @abstractmethod
    def single_flight(self, name: str, ttl: float):
        """Context manager que entrega True si se obtuvo el lock ``name``."""


class CeleryTaskQueue(TaskQueue):
    def __init__(self, celery_app, redis_client=None):
        self.celery_app = celery_app
        self._redis = redis_client

    @property
    def redis(self):
        if self._redis is None:
            import redis
            from jewelry_erp.core.config import settings
            self._redis = redis.Redis.from_url(settings.redis_url)
        return self._redis

    def enqueue(self, task_name, kwargs=None, countdown=0, queue=None) -> str:
        options = {}
        if countdown:
            options["countdown"] = countdown
        if queue:
            options["queue"] = queue
        result = self.celery_app.send_task(task_name, kwargs=kwargs or {}, **options)
        logger.debug(f"Enqueued {task_name} ({result.id}) countdown={countdown}")
        return result.id

    @contextmanager
    def single_flight(self, name: str, ttl: float) -> Iterator[bool]:
        from redis.exceptions import LockError

        lock = self.redis.lock(f"single-flight:{name}", timeout=ttl, blocking=False)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    # TTL expired while the job was still running
                    logger.warning(f"Single-flight lock '{name}' expired before release")


class QueuedTask(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    task_name: str
    kwargs: Dict[str, Any] = Field(default_factory=dict)
    countdown: float = 0
    queue: Optional[str] = None
    sequence: int = 0


class InMemoryTaskQueue(TaskQueue):
    def __init__(self):
        self.dispatched: List[QueuedTask] = []
        self._pending: List[QueuedTask] = []
        self._handlers: Dict[str, Callable[..., Any]] = {}
        self._held: set = set()
        self._guard = threading.Lock()
        self._counter = itertools.count()

    def register(self, task_name: str, handler: Callable[..., Any]) -> None:
        self._handlers[task_name] = handler

    def enqueue(self, task_name, kwargs=None, countdown=0, queue=None) -> str:
        task = QueuedTask(
            task_name=task_name,
            kwargs=dict(kwargs or {}),
            countdown=countdown,
            queue=queue,
            sequence=next(self._counter)
        )
        with self._guard:
            self.dispatched.append(task)
            self._pending.append(task)
        return task.id

    @contextmanager
    def single_flight(self, name: str, ttl: float) -> Iterator[bool]:
        with self._guard:
            acquired = name not in self._held
            if acquired:
                self._held.add(name)
        try:
            yield acquired
        finally:
            if acquired:
                with self._guard:
                    self._held.discard(name)

    def pending(self) -> List[QueuedTask]:
        with self._guard:
            return list(self._pending)

    def run_pending(self, max_tasks: int = 1000) -> int:
        """Ejecutar las tareas pendientes en orden FIFO (ignora los retrasos)."""
        executed = 0
        while executed < max_tasks:
            with self._guard:
                if not self._pending:
                    break
                task = self._pending.pop(0)
            handler = self._handlers.get(task.task_name)
            if handler is None:
                logger.warning(f"No handler registered for {task.task_name}, dropping task {task.id}")
            else:
                handler(**task.kwargs)
            executed += 1
        return executed
