"""VISA resource layer backed by PyVISA.

Every PyVISA call blocks, so each one runs in a worker thread via
``asyncio.to_thread``. Descriptors are the usual VISA resource strings, e.g.
``USB0::0x0699::0x0522::C012345::INSTR`` or ``GPIB0::22::INSTR``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import pyvisa

from .base import (
    DEFAULT_IDENTITY_COMMAND,
    DEFAULT_QUERY,
    AdapterError,
    IdentityQueryError,
    InstrumentReadError,
    InstrumentSession,
    InstrumentWriteError,
    ResourceLayer,
    SessionOpenError,
)


_LOG = logging.getLogger(__name__)


class VisaSession(InstrumentSession):
    """Session wrapping an open ``pyvisa`` message-based resource."""

    def __init__(self, descriptor: str, resource: Any, identity_command: str) -> None:
        super().__init__(descriptor)
        self._resource: Optional[Any] = resource
        self._identity_command = identity_command

    def _require_open(self) -> Any:
        resource = self._resource
        if resource is None:
            raise AdapterError(f"VISA session {self.descriptor!r} is closed")
        return resource

    async def write(self, data: bytes) -> int:
        resource = self._require_open()

        def _do_write() -> int:
            count = resource.write_raw(data)
            _LOG.debug("visa.write: %s wrote %s bytes: %r", self.descriptor, count, data)
            return int(count)

        try:
            return await asyncio.to_thread(_do_write)
        except Exception as exc:
            raise InstrumentWriteError(f"VISA write to {self.descriptor} failed: {exc}") from exc

    async def read(self, max_len: int) -> bytes:
        resource = self._require_open()

        def _do_read() -> bytes:
            # A single viRead; the status code only says why the read ended.
            data, status = resource.visalib.read(resource.session, max(1, max_len))
            _LOG.debug("visa.read: %s status=%s got=%r", self.descriptor, status, data)
            return bytes(data)

        try:
            return await asyncio.to_thread(_do_read)
        except Exception as exc:
            raise InstrumentReadError(f"VISA read from {self.descriptor} failed: {exc}") from exc

    async def query_identity(self) -> str:
        resource = self._require_open()
        try:
            reply = await asyncio.to_thread(resource.query, self._identity_command)
        except Exception as exc:
            raise IdentityQueryError(
                f"Identity query to {self.descriptor} failed: {exc}"
            ) from exc
        return str(reply).strip()

    async def close(self) -> None:
        resource = self._resource
        self._resource = None
        if resource is None:
            return
        try:
            await asyncio.to_thread(resource.close)
        except Exception:
            _LOG.warning("Failed to close VISA session %s", self.descriptor, exc_info=True)


class VisaResourceLayer(ResourceLayer):
    """Resource layer using a ``pyvisa.ResourceManager``.

    Settings:
      - visa_library (str, default ""): PyVISA backend, e.g. "@py" or a path
        to a vendor VISA shared library. Empty selects the default.
      - timeout_ms (int, optional): I/O timeout applied to every opened session.
      - identity_command (str, default "*IDN?")
    """

    name = "visa"

    def __init__(
        self,
        visa_library: str = "",
        timeout_ms: Optional[int] = None,
        identity_command: str = DEFAULT_IDENTITY_COMMAND,
    ) -> None:
        self._visa_library = visa_library
        self._timeout_ms = timeout_ms
        self._identity_command = identity_command
        self._rm: Optional[Any] = None

    def _require_manager(self) -> Any:
        if self._rm is None:
            raise AdapterError("VISA resource manager is not open")
        return self._rm

    async def open(self) -> None:
        if self._rm is not None:
            return
        try:
            self._rm = await asyncio.to_thread(pyvisa.ResourceManager, self._visa_library)
        except Exception as exc:
            raise AdapterError(f"Failed to open VISA resource manager: {exc}") from exc
        _LOG.debug("visa.open: resource manager %r", self._rm)

    async def enumerate(self, query: str = DEFAULT_QUERY) -> List[str]:
        rm = self._require_manager()
        try:
            found = await asyncio.to_thread(rm.list_resources, query)
        except Exception as exc:
            raise AdapterError(f"Failed to enumerate VISA resources ({query}): {exc}") from exc
        return [str(descriptor) for descriptor in found]

    async def open_session(self, descriptor: str) -> VisaSession:
        rm = self._require_manager()

        def _open() -> Any:
            resource = rm.open_resource(descriptor)
            if self._timeout_ms is not None:
                resource.timeout = self._timeout_ms
            return resource

        try:
            resource = await asyncio.to_thread(_open)
        except Exception as exc:
            raise SessionOpenError(f"Failed to open VISA resource {descriptor}: {exc}") from exc
        return VisaSession(descriptor, resource, self._identity_command)

    async def close(self) -> None:
        rm = self._rm
        self._rm = None
        if rm is None:
            return
        try:
            await asyncio.to_thread(rm.close)
        except Exception:
            _LOG.warning("Failed to close VISA resource manager", exc_info=True)
