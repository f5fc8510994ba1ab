"""Tests for the background event loop shared by the socket threads."""

from __future__ import annotations

import asyncio
import concurrent.futures
import sys
import threading
import time
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from visa_bridge.runtime import AsyncRuntime, RuntimeStoppedError  # noqa: E402


async def _answer() -> int:
    await asyncio.sleep(0)
    return 42


class AsyncRuntimeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = AsyncRuntime(cancel_timeout=2.0)
        self.runtime.start()
        self.addCleanup(self.runtime.stop)

    def test_run_returns_coroutine_result(self) -> None:
        self.assertTrue(self.runtime.running)
        self.assertEqual(self.runtime.run(_answer()), 42)

    def test_stop_cancels_a_blocked_caller(self) -> None:
        outcome: list[BaseException] = []
        started = threading.Event()

        async def hang() -> None:
            started.set()
            await asyncio.sleep(30)

        def caller() -> None:
            try:
                self.runtime.run(hang())
            except BaseException as exc:  # noqa: BLE001 - recorded for the assertion
                outcome.append(exc)

        worker = threading.Thread(target=caller, daemon=True)
        worker.start()
        self.assertTrue(started.wait(2.0))

        began = time.monotonic()
        self.runtime.stop()
        worker.join(timeout=2.0)

        self.assertFalse(worker.is_alive())
        self.assertLess(time.monotonic() - began, 2.0)
        self.assertEqual(len(outcome), 1)
        self.assertIsInstance(outcome[0], concurrent.futures.CancelledError)
        self.assertFalse(self.runtime.running)

    def test_run_after_stop_raises(self) -> None:
        self.runtime.stop()
        coro = _answer()
        with self.assertRaises(RuntimeStoppedError):
            self.runtime.run(coro)
        # The rejected coroutine is closed, not left pending.
        self.assertIsNone(coro.cr_frame)

    def test_stop_is_idempotent(self) -> None:
        self.runtime.stop()
        self.runtime.stop()
        self.assertFalse(self.runtime.running)


if __name__ == "__main__":
    unittest.main()
