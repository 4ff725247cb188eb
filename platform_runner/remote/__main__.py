"""Entry point for a platform process: `python -m platform_runner.remote`.

By default the suite protocol runs over this process's stdin and stdout, and
anything the suite itself writes to stdout is redirected to stderr. With
`--connect host:port` it runs over a loopback socket instead.
"""

import argparse
import asyncio
import logging
import os
import sys

from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import StreamTransport
from platform_runner.remote.listener import RemoteListener

log = logging.getLogger(__name__)


async def open_stdio() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Take over stdin and stdout for the protocol.

    File descriptor 1 is pointed at stderr afterwards so that stray output
    cannot corrupt the frame stream.
    """
    loop = asyncio.get_running_loop()
    protocol_out = os.fdopen(os.dup(sys.stdout.fileno()), "wb", buffering=0)
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr

    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    transport, protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()), protocol_out
    )
    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return reader, writer


def parse_address(address: str) -> tuple[str, int]:
    """Split `host:port`.

    Raises:
        ValueError: If `address` has no port

    """
    host, separator, port = address.rpartition(":")
    if not separator or not host:
        raise ValueError(f"Expected host:port, got '{address}'")
    return host, int(port)


async def run(suite: str | None, connect: str | None) -> int:
    """Serve one suite and return the process exit code."""
    if connect is not None:
        host, port = parse_address(connect)
        log.debug("Connecting to %s:%d", host, port)
        reader, writer = await asyncio.open_connection(host, port)
    else:
        reader, writer = await open_stdio()

    multiplexer = Multiplexer(StreamTransport(reader, writer))
    await RemoteListener(multiplexer, default_path=suite).run()
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Serve a test suite to a runner")
    parser.add_argument("suite", nargs="?", help="Path of the suite to serve")
    parser.add_argument(
        "--connect",
        metavar="HOST:PORT",
        help="Connect to the runner over TCP instead of using stdio",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        exit_code = asyncio.run(run(args.suite, args.connect))
    except ValueError as e:
        parser.error(str(e))
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
