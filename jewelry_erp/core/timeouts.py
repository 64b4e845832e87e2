"""
Timeout guard for blocking collaborator calls.

The call runs on a worker thread; if it does not finish in time the caller
gets CollaboratorTimeout. The hung thread itself cannot be preempted and is
left to finish in the background.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional
import logging

from jewelry_erp.core.exceptions import CollaboratorTimeout

logger = logging.getLogger(__name__)


def call_with_timeout(operation: str, fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    if not timeout:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collaborator")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.error(f"{operation} exceeded timeout of {timeout}s")
        raise CollaboratorTimeout(operation, timeout)
    finally:
        executor.shutdown(wait=False)
