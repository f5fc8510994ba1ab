"""VISA bridge: serve one locally attached instrument over a line-based TCP protocol."""

from . import bridge, config, resolver, server

__all__ = [
    "bridge",
    "config",
    "resolver",
    "server",
]
