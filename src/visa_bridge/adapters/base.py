"""Base abstractions for the instrument-access layer."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List


DEFAULT_QUERY = "?*INSTR"
DEFAULT_IDENTITY_COMMAND = "*IDN?"


class AdapterError(RuntimeError):
    """General instrument-access failure."""


class SessionOpenError(AdapterError):
    """Raised when a session to a resource cannot be opened."""


class IdentityQueryError(AdapterError):
    """Raised when an instrument does not answer the identity query."""


class InstrumentWriteError(AdapterError):
    """Raised when bytes cannot be written to an open session."""


class InstrumentReadError(AdapterError):
    """Raised when a read on an open session fails."""


class InstrumentSession(ABC):
    """An open, stateful handle to one instrument.

    Sessions are not re-entrant. Callers that may overlap hold the session
    lock (:meth:`acquire` / :meth:`release`) for the whole write/read exchange.
    """

    def __init__(self, descriptor: str) -> None:
        self.descriptor = descriptor
        self._lock = asyncio.Lock()

    @abstractmethod
    async def write(self, data: bytes) -> int:
        """Send *data* to the instrument and return number of bytes accepted."""

    @abstractmethod
    async def read(self, max_len: int) -> bytes:
        """Perform one read of up to *max_len* bytes and return what arrived."""

    @abstractmethod
    async def query_identity(self) -> str:
        """Send the identity query and return the instrument's reply."""

    async def close(self) -> None:
        """Release the underlying handle. Safe to call more than once."""

    async def acquire(self) -> None:
        """Acquire the session's exchange lock."""

        await self._lock.acquire()

    def release(self) -> None:
        """Release the session's exchange lock."""

        if self._lock.locked():
            self._lock.release()


class ResourceLayer(ABC):
    """Resource-manager side of the instrument-access layer."""

    name = "base"

    @abstractmethod
    async def open(self) -> None:
        """Open the default resource manager."""

    @abstractmethod
    async def enumerate(self, query: str = DEFAULT_QUERY) -> List[str]:
        """Return descriptors matching *query* in the order the layer reports them."""

    @abstractmethod
    async def open_session(self, descriptor: str) -> InstrumentSession:
        """Open a session to *descriptor*."""

    async def close(self) -> None:
        """Close the resource manager. Safe to call more than once."""
