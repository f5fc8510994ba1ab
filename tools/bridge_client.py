"""One-shot client for the VISA bridge: send a single line, print the reply."""

from __future__ import annotations

import argparse
import logging
import socket
import sys

_LOG = logging.getLogger(__name__)


def send_line(host: str, port: int, line: str, timeout: float = 5.0) -> bytes:
    """Send *line* on a fresh connection and return the reply without its final newline.

    The server closes the connection after one reply, so everything up to EOF
    belongs to it; instrument replies may carry their own terminator.
    """

    chunks = []
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(line.encode("ascii") + b"\n")
        _LOG.debug("Sent %r", line)
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    reply = b"".join(chunks)
    return reply[:-1] if reply.endswith(b"\n") else reply


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(message)s")
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=12345)
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("command", help="SCPI line, e.g. '*IDN?'")
    args = parser.parse_args()
    try:
        reply = send_line(args.host, args.port, args.command, args.timeout)
    except OSError as exc:
        _LOG.error("Request failed: %s", exc)
        return 1
    print(reply.decode("ascii", errors="replace"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
