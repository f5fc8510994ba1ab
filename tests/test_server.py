"""Tests for bridge start-up, shutdown and the CLI runner."""

from __future__ import annotations

import re
import signal
import socket
import subprocess
import sys
import textwrap
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest import mock

import pytest

from fake_instruments import SRC_DIR, FakeResourceLayer, FakeSession, layer_with_identities

from visa_bridge import server as server_mod
from visa_bridge.adapters.base import AdapterError, SessionOpenError
from visa_bridge.config import (
    Config,
    ConfigurationError,
    InstrumentSettings,
    ServerSettings,
)
from visa_bridge.resolver import DiscoveryError, InstrumentNotFoundError
from visa_bridge.server import BridgeServerFacade, ResourceLayerFactory


def _config(key: str | None = "tektronix", resource: str | None = None) -> Config:
    return Config(
        server=ServerSettings(host="127.0.0.1", port=0),
        instrument=InstrumentSettings(key=key, resource=resource),
    )


class FacadeStartupTests(unittest.TestCase):
    def test_start_resolves_and_opens_long_lived_session(self) -> None:
        layer = layer_with_identities(["HP8563", "TEKTRONIX MSO54"])
        facade = BridgeServerFacade(_config(), layer=layer)
        ctx = facade.start()
        try:
            self.assertIs(ctx.session, layer.sessions["RES1::INSTR"])
            self.assertFalse(ctx.session.closed)
            self.assertTrue(layer.is_open)
            self.assertNotEqual(ctx.server.port, 0)
        finally:
            facade.stop()
        self.assertTrue(ctx.session.closed)
        self.assertTrue(layer.closed)
        self.assertFalse(ctx.runtime.running)

    def test_configured_resource_skips_discovery(self) -> None:
        session = FakeSession("USB0::1::INSTR", "whatever")
        layer = FakeResourceLayer({"USB0::1::INSTR": session})
        facade = BridgeServerFacade(_config(key=None, resource="USB0::1::INSTR"), layer=layer)
        ctx = facade.start()
        try:
            self.assertIs(ctx.session, session)
            self.assertEqual(layer.queries, [])
            self.assertEqual(session.identity_queries, 0)
        finally:
            facade.stop()

    def test_not_found_releases_manager(self) -> None:
        layer = layer_with_identities(["HP8563"])
        facade = BridgeServerFacade(_config(), layer=layer)
        with self.assertRaises(InstrumentNotFoundError):
            facade.start()
        self.assertTrue(layer.closed)

    def test_enumeration_failure_is_fatal(self) -> None:
        layer = FakeResourceLayer({}, fail_enumerate=True)
        facade = BridgeServerFacade(_config(), layer=layer)
        with self.assertRaises(DiscoveryError):
            facade.start()
        self.assertTrue(layer.closed)

    def test_session_open_failure_is_fatal(self) -> None:
        layer = FakeResourceLayer({"GONE::INSTR": None})
        facade = BridgeServerFacade(_config(key=None, resource="GONE::INSTR"), layer=layer)
        with self.assertRaises(SessionOpenError):
            facade.start()
        self.assertTrue(layer.closed)

    def test_manager_open_failure_is_fatal(self) -> None:
        layer = FakeResourceLayer({}, fail_open=True)
        facade = BridgeServerFacade(_config(), layer=layer)
        with self.assertRaises(AdapterError):
            facade.start()

    def test_key_or_resource_required(self) -> None:
        facade = BridgeServerFacade(_config(key=None), layer=FakeResourceLayer({}))
        with self.assertRaises(ConfigurationError):
            facade.start()

    def test_stop_is_idempotent(self) -> None:
        layer = layer_with_identities(["TEKTRONIX MSO54"])
        facade = BridgeServerFacade(_config(), layer=layer)
        facade.start()
        facade.stop()
        facade.stop()
        self.assertEqual(layer.sessions["RES0::INSTR"].close_count, 2)


TESTS_DIR = Path(__file__).resolve().parent


def _send(port: int, line: bytes, timeout: float = 5.0) -> bytes:
    with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
        sock.sendall(line)
        chunks = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)


def _wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


class ShutdownDuringRequestTests(unittest.TestCase):
    def test_request_shutdown_finishes_in_flight_request_then_releases(self) -> None:
        session = FakeSession("RES0::INSTR", "TEKTRONIX MSO54", write_delay=0.5)
        layer = FakeResourceLayer({"RES0::INSTR": session})
        facade = BridgeServerFacade(_config(), layer=layer)
        worker = threading.Thread(target=facade.serve_forever, daemon=True)
        worker.start()
        server = _wait_for(lambda: facade.server)

        with ThreadPoolExecutor(max_workers=1) as pool:
            reply = pool.submit(_send, server.port, b"OUTPUT ON\n")
            _wait_for(lambda: session.writes)
            facade.request_shutdown()
            self.assertEqual(reply.result(timeout=5.0), b"Command sent\n")

        worker.join(timeout=5.0)
        self.assertFalse(worker.is_alive())
        self.assertIsNone(facade.server)
        self.assertTrue(session.closed)
        self.assertTrue(layer.closed)

    def test_request_shutdown_before_start_is_harmless(self) -> None:
        facade = BridgeServerFacade(_config(), layer=layer_with_identities(["TEKTRONIX"]))
        facade.request_shutdown()
        self.assertIsNone(facade.server)


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM delivery is POSIX only")
class SigtermTests(unittest.TestCase):
    CHILD = textwrap.dedent(
        """
        import sys
        sys.path[:0] = [{src!r}, {tests!r}]
        from unittest import mock
        from fake_instruments import FakeResourceLayer, FakeSession
        from visa_bridge.config import Config, InstrumentSettings, ServerSettings
        from visa_bridge.server import ResourceLayerFactory, run_from_cli

        session = FakeSession("RES0::INSTR", "TEKTRONIX MSO54", write_delay=1.0)
        layer = FakeResourceLayer({{"RES0::INSTR": session}})
        config = Config(
            server=ServerSettings(host="127.0.0.1", port=0),
            instrument=InstrumentSettings(key="tektronix"),
        )
        with mock.patch.object(ResourceLayerFactory, "build", return_value=layer):
            code = run_from_cli(config)
        print("session closed:", session.closed, "layer closed:", layer.closed, flush=True)
        sys.exit(code)
        """
    )

    def test_sigterm_during_request_exits_cleanly(self) -> None:
        script = self.CHILD.format(src=str(SRC_DIR), tests=str(TESTS_DIR))
        proc = subprocess.Popen(
            [sys.executable, "-c", script],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:
            port = None
            for line in proc.stderr:
                match = re.search(r"listening on [\d.]+:(\d+)", line)
                if match:
                    port = int(match.group(1))
                    break
            self.assertIsNotNone(port, "bridge did not start")

            with ThreadPoolExecutor(max_workers=1) as pool:
                reply = pool.submit(_send, port, b"OUTPUT ON\n")
                for line in proc.stderr:
                    if "Received: 'OUTPUT ON'" in line:
                        break
                # The fake write takes a second; the signal lands in the middle of it.
                time.sleep(0.3)
                proc.send_signal(signal.SIGTERM)
                self.assertEqual(reply.result(timeout=10.0), b"Command sent\n")
            out, _ = proc.communicate(timeout=10.0)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.communicate()
        self.assertEqual(proc.returncode, 0)
        self.assertIn("session closed: True layer closed: True", out)


class ResourceLayerFactoryTests(unittest.TestCase):
    def test_builds_visa_backend_by_default(self) -> None:
        from visa_bridge.adapters.visa import VisaResourceLayer

        layer = ResourceLayerFactory().build(InstrumentSettings(key="x"))
        self.assertIsInstance(layer, VisaResourceLayer)

    def test_builds_usbtmc_backend(self) -> None:
        from visa_bridge.adapters.usbtmc import UsbTmcResourceLayer

        layer = ResourceLayerFactory().build(InstrumentSettings(key="x", backend="usbtmc"))
        self.assertIsInstance(layer, UsbTmcResourceLayer)

    def test_unknown_backend(self) -> None:
        with self.assertRaises(AdapterError):
            ResourceLayerFactory().build(InstrumentSettings(key="x", backend="gpib-raw"))


def test_run_from_cli_returns_nonzero_when_not_found() -> None:
    layer = layer_with_identities(["HP8563"])
    with mock.patch.object(ResourceLayerFactory, "build", return_value=layer):
        assert server_mod.run_from_cli(_config()) == 1
    assert layer.closed


def test_run_from_cli_lists_instruments(capsys: pytest.CaptureFixture[str]) -> None:
    layer = layer_with_identities(["HP8563", None, "TEKTRONIX MSO54"])
    with mock.patch.object(ResourceLayerFactory, "build", return_value=layer):
        assert server_mod.run_from_cli(_config(key=None), list_only=True) == 0
    out = capsys.readouterr().out
    assert "1: RES0::INSTR, HP8563" in out
    assert "2: RES2::INSTR, TEKTRONIX MSO54" in out
    assert layer.closed


def test_run_from_cli_reports_empty_listing(capsys: pytest.CaptureFixture[str]) -> None:
    layer = FakeResourceLayer({})
    with mock.patch.object(ResourceLayerFactory, "build", return_value=layer):
        assert server_mod.run_from_cli(_config(key=None), list_only=True) == 0
    assert "No instruments found." in capsys.readouterr().out
