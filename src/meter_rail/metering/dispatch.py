"""
Background Dispatch

Runs the post-ingest work (aggregate recompute, limit check) off the
ingest path. Failures are logged and never reach the caller; lost work
is recovered by AggregationEngine.reconcile_period.
"""

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional
import threading
import structlog

logger = structlog.get_logger()


class Dispatcher(ABC):
    """Fire-and-forget task runner."""

    @abstractmethod
    def submit(self, task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Schedule fn(*args, **kwargs); never raises fn's errors."""

    def shutdown(self, wait: bool = True) -> None:
        pass


def _run_logged(task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.error("dispatched_task_failed", task=task_name, error=str(e), exc_info=True)
        return None


class InlineDispatcher(Dispatcher):
    """Runs tasks immediately on the calling thread (tests, CLI)."""

    def submit(self, task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        _run_logged(task_name, fn, *args, **kwargs)


class ThreadPoolDispatcher(Dispatcher):
    """Runs tasks on a bounded thread pool."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="meter-dispatch")
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def submit(self, task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        future = self._executor.submit(_run_logged, task_name, fn, *args, **kwargs)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every task submitted so far."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
