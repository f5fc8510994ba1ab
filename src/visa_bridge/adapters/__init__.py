"""Instrument-access backends."""

from .base import (
    AdapterError,
    IdentityQueryError,
    InstrumentReadError,
    InstrumentSession,
    InstrumentWriteError,
    ResourceLayer,
    SessionOpenError,
)

__all__ = [
	"AdapterError",
	"IdentityQueryError",
	"InstrumentReadError",
	"InstrumentSession",
	"InstrumentWriteError",
	"ResourceLayer",
	"SessionOpenError",
]
