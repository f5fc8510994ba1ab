"""Per-connection request/response bridge between a TCP client and the instrument."""

from __future__ import annotations

import logging
import socket
from typing import Optional

from .adapters.base import InstrumentReadError, InstrumentSession, InstrumentWriteError
from .config import BridgeSettings
from .runtime import AsyncRuntime

LOGGER = logging.getLogger(__name__)

LINE_TERMINATOR = b"\n"


def strip_terminators(raw: bytes) -> bytes:
    return raw.rstrip(b"\r\n")


def is_query(line: bytes) -> bool:
    """A request is a query when its last non-whitespace character is ``?``."""

    return line.rstrip().endswith(b"?")


class CommandBridge:
    """Forward one client line to the instrument and produce the reply.

    :meth:`handle_request` holds the protocol rules; :meth:`serve_one` adds the
    socket handling and guarantees nothing escapes to the accept loop.
    """

    def __init__(
        self,
        session: InstrumentSession,
        runtime: AsyncRuntime,
        settings: Optional[BridgeSettings] = None,
    ) -> None:
        self._session = session
        self._runtime = runtime
        self._settings = settings or BridgeSettings()

    @property
    def session(self) -> InstrumentSession:
        return self._session

    async def _exchange(self, line: bytes) -> bytes:
        settings = self._settings
        await self._session.acquire()
        try:
            try:
                await self._session.write(line + LINE_TERMINATOR)
            except InstrumentWriteError:
                LOGGER.exception("Write to %s failed", self._session.descriptor)
                return settings.write_error.encode("utf-8")

            if not is_query(line):
                return settings.acknowledgment.encode("utf-8")

            try:
                return await self._session.read(settings.read_size)
            except InstrumentReadError:
                LOGGER.exception("Read from %s failed", self._session.descriptor)
                return settings.read_error.encode("utf-8")
        finally:
            self._session.release()

    def handle_request(self, raw_line: bytes) -> Optional[bytes]:
        """Return the response body for *raw_line*, or ``None`` if there is nothing to send."""

        line = strip_terminators(raw_line)
        if not line:
            return None
        return self._runtime.run(self._exchange(line))

    def serve_one(self, connection: socket.socket) -> None:
        """Serve exactly one request on *connection*. Never raises."""

        try:
            with connection.makefile("rb") as reader:
                raw = reader.readline()
            if not raw.endswith(LINE_TERMINATOR):
                LOGGER.debug("Peer closed before sending a complete line (%d bytes)", len(raw))
                return
            LOGGER.info("Received: %r", strip_terminators(raw).decode("ascii", errors="replace"))

            response = self.handle_request(raw)
            if response is None:
                LOGGER.debug("Empty request; nothing forwarded")
                return

            LOGGER.info("Reply: %r", response.decode("ascii", errors="replace"))
            connection.sendall(response + LINE_TERMINATOR)
        except OSError as exc:
            LOGGER.debug("Client connection dropped: %s", exc)
        except Exception:
            LOGGER.exception("Unexpected failure while serving request")
            self._send_error(connection)

    def _send_error(self, connection: socket.socket) -> None:
        try:
            connection.sendall(self._settings.internal_error.encode("utf-8") + LINE_TERMINATOR)
        except OSError:
            LOGGER.debug("Could not deliver error reply", exc_info=True)
