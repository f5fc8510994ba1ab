"""Command-line entry point for the VISA bridge."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import BACKENDS, Config, ConfigurationError, dump_config, load_config
from .server import run_from_cli

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visa-bridge",
        description="Expose one VISA/USBTMC instrument as a line-based SCPI TCP server",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the bridge configuration file",
    )
    parser.add_argument("--key", help="Substring matched against each instrument's *IDN? reply")
    parser.add_argument("--resource", help="Fixed resource descriptor; skips discovery")
    parser.add_argument("--backend", choices=BACKENDS, help="Instrument access backend")
    parser.add_argument("--host", help="Listen address")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument(
        "--concurrent",
        action="store_true",
        default=None,
        help="Serve clients in parallel threads (instrument access stays serialized)",
    )
    parser.add_argument("--list", action="store_true", help="List instruments and exit")
    parser.add_argument(
        "--dump-config", action="store_true", help="Print the effective configuration and exit"
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Return a copy of *config* with command-line values taking precedence."""

    server = config.server
    if args.host is not None:
        server = replace(server, host=args.host)
    if args.port is not None:
        server = replace(server, port=args.port)
    if args.concurrent:
        server = replace(server, concurrent=True)

    instrument = config.instrument
    if args.key is not None:
        instrument = replace(instrument, key=args.key)
    if args.resource is not None:
        instrument = replace(instrument, resource=args.resource)
    if args.backend is not None:
        instrument = replace(instrument, backend=args.backend)

    return replace(config, server=server, instrument=instrument)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigurationError as exc:
        parser.error(str(exc))
    if args.dump_config:
        sys.stdout.write(dump_config(config))
        return 0
    return run_from_cli(config, list_only=args.list, log_level=args.log_level)


if __name__ == "__main__":
    sys.exit(main())
