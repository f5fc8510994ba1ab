"""Locate the instrument to bridge by matching its identity string."""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from .adapters.base import DEFAULT_QUERY, AdapterError, ResourceLayer

_LOG = logging.getLogger(__name__)


class DiscoveryError(RuntimeError):
    """Raised when the resource layer cannot enumerate instruments at all."""


class InstrumentNotFoundError(LookupError):
    """Raised when no connected instrument matches the configured key."""


@dataclass(frozen=True, slots=True)
class DiscoveredInstrument:
    """One enumerated resource together with its identity reply."""

    descriptor: str
    identity: str


def identity_matches(identity: str, key: str) -> bool:
    """Case-insensitive substring containment of *key* in *identity*."""

    return key.lower() in identity.lower()


class InstrumentResolver:
    """Walk the enumerated resources and identify each one in turn.

    Every candidate gets its own short-lived session which is closed again
    before the next candidate is tried. A candidate that cannot be opened or
    does not answer the identity query is skipped.
    """

    def __init__(self, layer: ResourceLayer, query: str = DEFAULT_QUERY) -> None:
        self._layer = layer
        self._query = query

    async def _enumerate(self) -> List[str]:
        try:
            descriptors = await self._layer.enumerate(self._query)
        except AdapterError as exc:
            raise DiscoveryError(f"Instrument enumeration failed: {exc}") from exc
        _LOG.info("Found %d instrument(s) matching %s", len(descriptors), self._query)
        return descriptors

    async def _identify(self, descriptor: str) -> Optional[str]:
        try:
            session = await self._layer.open_session(descriptor)
        except AdapterError as exc:
            _LOG.warning("Skipping %s: %s", descriptor, exc)
            return None
        try:
            return await session.query_identity()
        except AdapterError as exc:
            _LOG.warning("Skipping %s: %s", descriptor, exc)
            return None
        finally:
            await session.close()

    async def _walk(self) -> AsyncIterator[DiscoveredInstrument]:
        descriptors = await self._enumerate()
        for index, descriptor in enumerate(descriptors, start=1):
            identity = await self._identify(descriptor)
            if identity is None:
                continue
            _LOG.info("%d: %s, %s", index, descriptor, identity)
            yield DiscoveredInstrument(descriptor, identity)

    async def resolve(self, key: str) -> Optional[str]:
        """Return the descriptor of the first instrument whose identity contains *key*.

        Returns ``None`` when nothing is connected or nothing matches.
        """

        async with aclosing(self._walk()) as candidates:
            async for found in candidates:
                if identity_matches(found.identity, key):
                    _LOG.info("Instrument %r matched %s", key, found.descriptor)
                    return found.descriptor
        _LOG.info("No instrument identity contains %r", key)
        return None

    async def discover(self) -> List[DiscoveredInstrument]:
        """Return every instrument that answered the identity query, in order."""

        return [found async for found in self._walk()]
