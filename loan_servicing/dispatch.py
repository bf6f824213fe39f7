"""
Side-Effect Dispatch

Audit and notification delivery happen after the financial write commits.
The dispatcher runs them inline or on a single background worker; either way
a failure is logged and never reaches the caller of the financial operation.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, Future, wait
from typing import Callable, List, Optional, Set

from .logging_config import get_logger, log_action

logger = get_logger("loan_servicing.dispatch")


class SideEffectDispatcher:
    """
    Best-effort executor for post-commit side effects.

    Inline mode runs each side effect immediately in the calling thread.
    Background mode queues it on one worker thread so side effects are
    delivered in submission order without blocking the caller.
    """

    def __init__(self, background: bool = False):
        self.background = background
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False
        if background:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="side-effects")

    def submit(self, description: str, fn: Callable, *args, **kwargs) -> Optional[Future]:
        """Run fn(*args, **kwargs), logging and discarding any exception"""
        if self._closed:
            logger.warning(f"Dispatcher shut down, dropping side effect: {description}")
            return None

        if self._executor is None:
            self._run(description, fn, args, kwargs)
            return None

        future = self._executor.submit(self._run, description, fn, args, kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, description: str, fn: Callable, args, kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            log_action(
                logger, "error", f"Side effect failed: {description}: {e}",
                action="side_effect_failed",
                correlation_id=kwargs.get("correlation_id"),
                extra={"description": description, "error_type": type(e).__name__},
                exc_info=True
            )

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued side effects; True when all finished in time"""
        with self._lock:
            pending: List[Future] = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, cancel_pending: bool = False) -> None:
        """Stop accepting work; optionally cancel side effects not yet started"""
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=cancel_pending)
