"""Worker pool that runs point service calls off the event loop."""
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar
import asyncio
import os
import threading
import structlog

from config import get_settings
from exceptions import PointTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


class PointDispatcher:
    def __init__(
        self,
        max_workers: Optional[int] = None,
        thread_name_prefix: str = "point-service-thread",
        timeout: Optional[float] = None,
    ):
        self.max_workers = max_workers or os.cpu_count() or 1
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(*args)`` on a pool worker and await its result.

        Abandoning the await (cancellation or timeout) never cancels the
        submitted work; it runs to completion on the worker.
        """
        inner = asyncio.wrap_future(self._executor.submit(fn, *args))
        # Consume the outcome so an abandoned result is not reported as unretrieved
        inner.add_done_callback(_consume_outcome)
        future = asyncio.shield(inner)
        if self.timeout is None:
            return await future

        try:
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Point call exceeded deadline, left running on worker",
                call=getattr(fn, "__name__", repr(fn)),
                timeout=self.timeout,
            )
            raise PointTimeoutError() from e

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _consume_outcome(future: "asyncio.Future") -> None:
    if not future.cancelled():
        future.exception()


_dispatcher: Optional[PointDispatcher] = None
_dispatcher_guard = threading.Lock()


def get_dispatcher() -> PointDispatcher:
    global _dispatcher
    with _dispatcher_guard:
        if _dispatcher is None:
            settings = get_settings()
            _dispatcher = PointDispatcher(
                max_workers=settings.worker_count,
                thread_name_prefix=settings.worker_thread_prefix,
                timeout=settings.request_timeout_seconds,
            )
            logger.info(
                "Point dispatcher started",
                workers=_dispatcher.max_workers,
                thread_name_prefix=settings.worker_thread_prefix,
            )
        return _dispatcher


def shutdown_dispatcher(wait: bool = True) -> None:
    global _dispatcher
    with _dispatcher_guard:
        dispatcher, _dispatcher = _dispatcher, None
    if dispatcher is not None:
        dispatcher.shutdown(wait=wait)
