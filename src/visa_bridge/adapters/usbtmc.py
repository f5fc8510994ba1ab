"""USBTMC (USB Test & Measurement Class) resource layer using python-usbtmc.

This backend talks to USB instruments that implement USBTMC directly through
pyusb, without a vendor VISA installation. Resource strings have the form
``USB::0x0699::0x0522::C012345::INSTR``; enumeration filters them with the
same ``?``/``*`` wildcards VISA uses.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Any, List, Optional, cast

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


try:
    import usbtmc  # type: ignore - python-usbtmc
except Exception:
    usbtmc = cast(Any, None)

_LOG = logging.getLogger(__name__)


def _require_usbtmc() -> Any:
    if usbtmc is None:
        raise AdapterError("python-usbtmc is required for the usbtmc backend")
    return usbtmc


class UsbTmcSession(InstrumentSession):
    """Session wrapping an open ``usbtmc.Instrument``."""

    def __init__(self, descriptor: str, device: Any, identity_command: str) -> None:
        super().__init__(descriptor)
        self._device: Optional[Any] = device
        self._identity_command = identity_command

    def _require_open(self) -> Any:
        device = self._device
        if device is None:
            raise AdapterError(f"USBTMC session {self.descriptor!r} is closed")
        return device

    async def write(self, data: bytes) -> int:
        device = self._require_open()

        def _do_write() -> int:
            device.write_raw(data)
            _LOG.debug("usbtmc.write: wrote %d bytes: %r", len(data), data)
            return len(data)

        try:
            return await asyncio.to_thread(_do_write)
        except Exception as exc:
            raise InstrumentWriteError(f"USBTMC write failed: {exc}") from exc

    async def read(self, max_len: int) -> bytes:
        device = self._require_open()

        def _do_read() -> bytes:
            data = device.read_raw(max(1, max_len))
            _LOG.debug("usbtmc.read: read %d bytes: %r", len(data), bytes(data))
            return bytes(data)

        try:
            return await asyncio.to_thread(_do_read)
        except Exception as exc:
            raise InstrumentReadError(f"USBTMC read failed: {exc}") from exc

    async def query_identity(self) -> str:
        device = self._require_open()
        try:
            reply = await asyncio.to_thread(device.ask, self._identity_command)
        except Exception as exc:
            raise IdentityQueryError(
                f"Identity query to {self.descriptor} failed: {exc}"
            ) from exc
        return str(reply).strip()

    async def close(self) -> None:
        device = self._device
        self._device = None
        if device is None:
            return

        def _close() -> None:
            try:
                device.close()
            except Exception:
                _LOG.warning("Failed to close USBTMC device %s", self.descriptor, exc_info=True)

        await asyncio.to_thread(_close)


class UsbTmcResourceLayer(ResourceLayer):
    """Resource layer enumerating and opening devices through python-usbtmc.

    Settings:
      - timeout_ms (int, optional): I/O timeout; python-usbtmc takes seconds.
      - identity_command (str, default "*IDN?")
    """

    name = "usbtmc"

    def __init__(
        self,
        timeout_ms: Optional[int] = None,
        identity_command: str = DEFAULT_IDENTITY_COMMAND,
    ) -> None:
        self._timeout = None if timeout_ms is None else timeout_ms / 1000
        self._identity_command = identity_command
        self._open = False

    async def open(self) -> None:
        # python-usbtmc has no manager handle; only check the backend exists.
        _require_usbtmc()
        self._open = True

    async def enumerate(self, query: str = DEFAULT_QUERY) -> List[str]:
        module = _require_usbtmc()
        if not self._open:
            raise AdapterError("USBTMC resource layer is not open")
        try:
            found = await asyncio.to_thread(module.list_resources)
        except Exception as exc:
            raise AdapterError(f"Failed to enumerate USBTMC devices: {exc}") from exc
        return [str(descriptor) for descriptor in found if fnmatch.fnmatchcase(str(descriptor), query)]

    async def open_session(self, descriptor: str) -> UsbTmcSession:
        module = _require_usbtmc()

        def _open() -> Any:
            device = module.Instrument(descriptor)
            if self._timeout is not None:
                device.timeout = self._timeout
            return device

        try:
            device = await asyncio.to_thread(_open)
        except Exception as exc:
            raise SessionOpenError(f"Failed to open USBTMC device {descriptor}: {exc}") from exc
        _LOG.debug("usbtmc.open_session: opened %s", descriptor)
        return UsbTmcSession(descriptor, device, self._identity_command)

    async def close(self) -> None:
        self._open = False
