"""Utility helpers for showsync_rec."""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Iterable, Iterator, TypeVar

from .config import COLLABORATOR_MAX_WORKERS
from .errors import RecommendationError, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar('T')

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        with _executor_lock:
            if _executor is None:
                _executor = ThreadPoolExecutor(
                    max_workers=COLLABORATOR_MAX_WORKERS,
                    thread_name_prefix="collaborator",
                )
    return _executor


def shutdown_executor() -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=False, cancel_futures=True)
            _executor = None


def call_with_timeout(func: Callable[..., T], *args, timeout: float, **kwargs) -> T:
    """
    Run a collaborator call with a bounded wait.

    A call that does not finish within ``timeout`` seconds raises
    UpstreamUnavailable; the worker thread is abandoned, not interrupted.
    I/O and SQLite errors raised by the collaborator are wrapped in
    UpstreamUnavailable as well; errors from our own taxonomy pass through.
    """
    name = getattr(func, '__qualname__', repr(func))
    future = _get_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        logger.warning(f"{name} timed out after {timeout:.1f}s")
        raise UpstreamUnavailable(f"{name} timed out after {timeout:.1f}s") from e
    except RecommendationError:
        raise
    except (OSError, sqlite3.Error) as e:
        logger.warning(f"{name} failed: {e}")
        raise UpstreamUnavailable(f"{name} failed: {e}") from e


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield successive lists of at most ``size`` items."""
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
