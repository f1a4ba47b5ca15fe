"""
Timeout Guard
=============

Wraps a blocking call to an external collaborator (embedding provider,
vector index) so it fails after a fixed deadline instead of hanging.

The call runs on a worker thread. On timeout the caller gets the configured
error immediately; the worker thread is abandoned and finishes on its own.

Usage:
    guard = TimeoutGuard(30, ProviderError, "embedding")
    vector = guard(embedder.embed_query, "leadership under pressure")
"""

import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional, Type, TypeVar

from .errors import RAGError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30.0

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    """Shared worker pool (lazy singleton)."""
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="rag-guard")
        return _executor


class TimeoutGuard:
    """Composable deadline for blocking calls."""

    def __init__(
        self,
        seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        error: Type[RAGError] = RAGError,
        label: str = "call",
    ):
        if seconds is not None and seconds <= 0:
            raise ValueError("Timeout must be positive")
        self.seconds = seconds
        self.error = error
        self.label = label

    def __call__(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self.seconds is None:
            return func(*args, **kwargs)

        future = _get_executor().submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self.seconds)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"{self.label} timed out after {self.seconds:g}s")
            raise self.error(f"{self.label} timed out after {self.seconds:g}s") from None

    def wrap(self, func: Callable[..., T]) -> Callable[..., T]:
        """Return ``func`` guarded by this deadline."""

        @functools.wraps(func)
        def guarded(*args: Any, **kwargs: Any) -> T:
            return self(func, *args, **kwargs)

        return guarded
