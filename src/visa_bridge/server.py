"""TCP line server exposing one instrument through the command bridge."""

from __future__ import annotations

import logging
import signal
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .adapters.base import AdapterError, InstrumentSession, ResourceLayer
from .bridge import CommandBridge
from .config import Config, ConfigurationError, InstrumentSettings, validate_config
from .resolver import (
    DiscoveredInstrument,
    DiscoveryError,
    InstrumentNotFoundError,
    InstrumentResolver,
)
from .runtime import AsyncRuntime

LOGGER = logging.getLogger(__name__)

LISTEN_BACKLOG = 5
WORKER_JOIN_TIMEOUT = 5.0


class ResourceLayerFactory:
    """Instantiate the configured instrument-access backend."""

    def __init__(self) -> None:
        self._builders: Dict[str, Callable[[InstrumentSettings], ResourceLayer]] = {
            "visa": self._build_visa,
            "usbtmc": self._build_usbtmc,
        }

    def build(self, settings: InstrumentSettings) -> ResourceLayer:
        builder = self._builders.get(settings.backend)
        if builder is None:
            raise AdapterError(f"No resource layer available for backend {settings.backend!r}")
        return builder(settings)

    def _build_visa(self, settings: InstrumentSettings) -> ResourceLayer:
        from .adapters.visa import VisaResourceLayer

        return VisaResourceLayer(
            visa_library=settings.visa_library,
            timeout_ms=settings.timeout_ms,
            identity_command=settings.identity_command,
        )

    def _build_usbtmc(self, settings: InstrumentSettings) -> ResourceLayer:
        # Lazy import to avoid requiring python-usbtmc unless this backend is used
        from .adapters.usbtmc import UsbTmcResourceLayer

        return UsbTmcResourceLayer(
            timeout_ms=settings.timeout_ms,
            identity_command=settings.identity_command,
        )


class BridgeServer:
    """Accept TCP clients and hand each connection to the bridge exactly once."""

    def __init__(
        self,
        host: str,
        port: int,
        bridge: CommandBridge,
        concurrent: bool = False,
    ) -> None:
        self._bridge = bridge
        self._concurrent = concurrent
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.sock.bind((host, port))
            # Listening from construction lets clients queue before loop() runs.
            self.sock.listen(LISTEN_BACKLOG)
        except OSError:
            self.sock.close()
            raise
        self.host, self.port = self.sock.getsockname()[:2]
        self._client_threads: set[threading.Thread] = set()
        self._client_threads_lock = threading.Lock()

    def loop(self) -> None:
        """Serve until the listening socket is closed."""

        while True:
            try:
                connection = self.sock.accept()
            except OSError:
                break
            if not self._concurrent:
                self._session_worker(connection)
                continue
            worker = threading.Thread(
                target=self._session_worker, args=(connection,), daemon=True
            )
            with self._client_threads_lock:
                self._client_threads.add(worker)
            worker.start()

    def _session_worker(self, connection: tuple[Any, Any]) -> None:
        sock, address = connection
        LOGGER.debug("Client connected %s", address)
        try:
            self._bridge.serve_one(sock)
        finally:
            try:
                sock.close()
            except OSError:
                LOGGER.warning("Failed to close client socket", exc_info=True)
            with self._client_threads_lock:
                self._client_threads.discard(threading.current_thread())

    @property
    def active_clients(self) -> int:
        with self._client_threads_lock:
            return len(self._client_threads)

    def close_listener(self) -> None:
        """Stop accepting; :meth:`loop` returns once the current client is served."""

        # shutdown() wakes a thread blocked in accept(); close() alone may not.
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def close(self, timeout: float = WORKER_JOIN_TIMEOUT) -> None:
        """Close the listener and wait for in-flight client workers to finish."""

        self.close_listener()
        with self._client_threads_lock:
            workers = list(self._client_threads)
        deadline = time.monotonic() + timeout
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
        stuck = sum(1 for worker in workers if worker.is_alive())
        if stuck:
            LOGGER.warning("%d client worker(s) still running after %.1fs", stuck, timeout)


@dataclass(slots=True)
class ServerContext:
    server: BridgeServer
    runtime: AsyncRuntime
    session: InstrumentSession


class BridgeServerFacade:
    """Own the resource manager, instrument session, runtime and listener.

    Everything opened by :meth:`start` is released by :meth:`stop`, including
    when :meth:`start` itself fails half way.
    """

    def __init__(self, config: Config, layer: Optional[ResourceLayer] = None) -> None:
        self._config = config
        self._layer = layer or ResourceLayerFactory().build(config.instrument)
        self._runtime = AsyncRuntime()
        self._session: Optional[InstrumentSession] = None
        self._server: Optional[BridgeServer] = None

    def _select_descriptor(self) -> str:
        settings = self._config.instrument
        if settings.resource:
            LOGGER.info("Using configured resource %s", settings.resource)
            return settings.resource
        assert settings.key is not None
        resolver = InstrumentResolver(self._layer, settings.query)
        descriptor = self._runtime.run(resolver.resolve(settings.key))
        if descriptor is None:
            raise InstrumentNotFoundError(f"No instrument matching {settings.key!r} was found")
        return descriptor

    def start(self) -> ServerContext:
        """Open the instrument, bind the listener and return the live context."""

        validate_config(self._config)
        try:
            self._runtime.start()
            self._runtime.run(self._layer.open())
            descriptor = self._select_descriptor()
            self._session = self._runtime.run(self._layer.open_session(descriptor))
            bridge = CommandBridge(self._session, self._runtime, self._config.bridge)
            self._server = BridgeServer(
                host=self._config.server.host,
                port=self._config.server.port,
                bridge=bridge,
                concurrent=self._config.server.concurrent,
            )
        except BaseException:
            self.stop()
            raise
        LOGGER.info(
            "VISA bridge listening on %s:%s for %s",
            self._server.host,
            self._server.port,
            descriptor,
        )
        return ServerContext(server=self._server, runtime=self._runtime, session=self._session)

    def list_instruments(self) -> List[DiscoveredInstrument]:
        """Enumerate and identify every instrument without starting the server."""

        resolver = InstrumentResolver(self._layer, self._config.instrument.query)
        try:
            self._runtime.start()
            self._runtime.run(self._layer.open())
            return self._runtime.run(resolver.discover())
        finally:
            self.stop()

    @property
    def server(self) -> Optional[BridgeServer]:
        """The listener while the bridge is running, else ``None``."""

        return self._server

    def request_shutdown(self) -> None:
        """Stop accepting clients; :meth:`serve_forever` then releases everything.

        Safe to call from a signal handler: it never waits on the event loop.
        """

        server = self._server
        if server is not None:
            server.close_listener()

    def serve_forever(self) -> None:
        ctx = self.start()
        try:
            ctx.server.loop()
        except KeyboardInterrupt:
            LOGGER.info("Shutting down bridge (Ctrl+C)")
        finally:
            self.stop()

    def stop(self) -> None:
        server, self._server = self._server, None
        session, self._session = self._session, None
        try:
            if server is not None:
                server.close()
        finally:
            if self._runtime.running:
                try:
                    if session is not None:
                        self._runtime.run(session.close())
                finally:
                    self._runtime.run(self._layer.close())
            self._runtime.stop()


def _print_instruments(instruments: List[DiscoveredInstrument]) -> None:
    if not instruments:
        print("No instruments found.")
        return
    for index, found in enumerate(instruments, start=1):
        print(f"{index}: {found.descriptor}, {found.identity}")


def run_from_cli(config: Config, list_only: bool = False, log_level: str = "INFO") -> int:
    """Run the bridge until interrupted; return the process exit code."""

    logging.basicConfig(level=log_level, format="[%(asctime)s] %(levelname)s %(message)s")
    try:
        facade = BridgeServerFacade(config)
        if list_only:
            _print_instruments(facade.list_instruments())
            return 0

        def _handle_shutdown(signum: int, _frame: object) -> None:
            LOGGER.info("Received signal %s, shutting down", signum)
            facade.request_shutdown()

        signal.signal(signal.SIGTERM, _handle_shutdown)
        facade.serve_forever()
    except (ConfigurationError, AdapterError, DiscoveryError, InstrumentNotFoundError, OSError) as exc:
        LOGGER.error("Startup failed: %s", exc)
        return 1
    return 0
