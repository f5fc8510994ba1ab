"""Background asyncio loop used by the blocking socket side of the bridge."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, TypeVar


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class RuntimeStoppedError(RuntimeError):
    """Raised when a coroutine is submitted after the runtime has stopped."""


class AsyncRuntime:
    """Run asyncio coroutines from synchronous connection handlers.

    :meth:`stop` cancels whatever is still running on the loop, so a thread
    blocked in :meth:`run` gets ``concurrent.futures.CancelledError`` instead
    of waiting on a loop that will never resume.
    """

    def __init__(self, cancel_timeout: float = 5.0) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="visa-bridge-io", daemon=True)
        self._started = threading.Event()
        self._stopping = threading.Event()
        self._cancel_timeout = cancel_timeout
        self._submitted: set[concurrent.futures.Future[Any]] = set()
        self._submitted_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopping.is_set()

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()
        self._started.wait()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._started.set()
        self._loop.run_forever()
        self._stopping.set()

    @staticmethod
    async def _cancel_pending() -> int:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    def stop(self) -> None:
        if not self._thread.is_alive():
            return
        cancelled = asyncio.run_coroutine_threadsafe(self._cancel_pending(), self._loop)
        try:
            count = cancelled.result(timeout=self._cancel_timeout)
        except concurrent.futures.TimeoutError:
            LOGGER.warning("Pending instrument I/O did not finish cancelling in time")
        else:
            if count:
                LOGGER.info("Cancelled %d pending instrument operation(s)", count)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._stopping.wait(timeout=5)
        self._thread.join(timeout=5)
        # Anything submitted after the cancel sweep never ran; release its waiter.
        with self._submitted_lock:
            leftovers = list(self._submitted)
        for future in leftovers:
            future.cancel()
        if not self._loop.is_closed() and not self._loop.is_running():
            self._loop.close()

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        if self._stopping.is_set() or self._loop.is_closed():
            coro.close()
            raise RuntimeStoppedError("Async runtime is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        with self._submitted_lock:
            self._submitted.add(future)
        try:
            return future.result()
        finally:
            with self._submitted_lock:
                self._submitted.discard(future)
