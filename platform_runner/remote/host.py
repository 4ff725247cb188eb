"""The control-page half of a browser platform.

A `RemoteHost` connects back to the runner's embedded server over a
WebSocket and hosts any number of suites in sandboxes, each on its own
virtual channel of that connection. It also keeps the runner informed that
the platform is alive, and whether it is paused for debugging.

Run as `python -m platform_runner.remote.host <url>` it stands in for a
browser: `<url>` is either the control page URL the browser would be
pointed at, or the manager WebSocket URL itself.
"""

import argparse
import asyncio
import contextlib
import logging
import sys
from collections.abc import Iterator
from dataclasses import dataclass, field

import aiohttp
from yarl import URL

from platform_runner.errors import ChannelClosedError, LoadError, ProtocolError
from platform_runner.multiplex.channel import channel_pair, pipe
from platform_runner.multiplex.multiplexer import Multiplexer, VirtualChannel
from platform_runner.multiplex.transport import ChannelTransport, WebSocketTransport
from platform_runner.protocol import HostCommand, LoadRequest, parse_host_command
from platform_runner.remote.listener import RemoteListener

log = logging.getLogger(__name__)

PING_INTERVAL = 1.0
URL_SCHEMES = ("http://", "https://", "ws://", "wss://")


@dataclass(kw_only=True)
class Sandbox:
    """One suite running inside the host, isolated on an in-memory channel."""

    id: int
    channel: VirtualChannel
    tasks: list[asyncio.Task[None]] = field(default_factory=list)

    async def close(self) -> None:
        self.channel.close()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)


class SandboxRegistry:
    """The suites loaded in one host session, by suite id."""

    def __init__(self) -> None:
        self._sandboxes: dict[int, Sandbox] = {}

    def __len__(self) -> int:
        return len(self._sandboxes)

    def __contains__(self, suite_id: object) -> bool:
        return suite_id in self._sandboxes

    def __iter__(self) -> Iterator[Sandbox]:
        return iter(list(self._sandboxes.values()))

    def add(self, sandbox: Sandbox) -> None:
        if sandbox.id in self._sandboxes:
            raise ValueError(f"Suite {sandbox.id} is already loaded")
        self._sandboxes[sandbox.id] = sandbox

    def discard(self, suite_id: int) -> Sandbox | None:
        return self._sandboxes.pop(suite_id, None)

    async def close(self, suite_id: int) -> None:
        """Tear down one sandbox; unknown ids are ignored."""
        sandbox = self.discard(suite_id)
        if sandbox is not None:
            await sandbox.close()

    async def close_all(self) -> None:
        sandboxes = list(self._sandboxes.values())
        self._sandboxes.clear()
        await asyncio.gather(*(s.close() for s in sandboxes), return_exceptions=True)


class RemoteHost:
    """Hosts suites for the runner over one manager connection."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        ping_interval: float = PING_INTERVAL,
    ) -> None:
        self.session = session
        self.ping_interval = ping_interval
        self.sandboxes = SandboxRegistry()
        self.paused = False
        self._multiplexer: Multiplexer | None = None

    async def run(self, manager_url: URL) -> None:
        """Connect to the manager and serve it until the connection ends."""
        log.debug("Connecting to %s", manager_url)
        async with self.session.ws_connect(manager_url) as ws:
            await self.serve(Multiplexer(WebSocketTransport(ws)))

    async def serve(self, multiplexer: Multiplexer) -> None:
        """Serve host commands arriving on `multiplexer` until it closes."""
        self._multiplexer = multiplexer
        pinger = asyncio.create_task(self._ping(multiplexer.root))
        try:
            async for message in multiplexer.root:
                await self._handle(message)
        except ChannelClosedError as e:
            log.debug("Manager connection ended: %s", e)
        finally:
            pinger.cancel()
            await asyncio.gather(pinger, return_exceptions=True)
            await self.sandboxes.close_all()
            await multiplexer.close()

    def resume(self) -> None:
        """Leave the paused state, as when the user presses play."""
        self.paused = False
        self._send(HostCommand(command="resume"))

    def request_restart(self) -> None:
        """Ask the runner to restart the current test."""
        self._send(HostCommand(command="restart"))

    async def _handle(self, message: object) -> None:
        try:
            command = parse_host_command(message)
        except ProtocolError as e:
            log.warning("Ignoring malformed host command: %s", e)
            return

        match command.command:
            case "loadSuite":
                self._load_suite(command)
            case "displayPause":
                self.paused = True
            case "resume":
                self.paused = False
            case "closeSuite":
                if command.id is not None:
                    await self.sandboxes.close(command.id)
            case _:
                log.warning("Ignoring unknown host command '%s'", command.command)

    def _load_suite(self, command: HostCommand) -> None:
        assert self._multiplexer is not None
        if command.channel is None or command.id is None or command.url is None:
            log.warning("Ignoring incomplete loadSuite command: %r", command)
            return
        if command.id in self.sandboxes:
            log.warning("Ignoring loadSuite: suite %d is already loaded", command.id)
            return
        try:
            channel = self._multiplexer.virtual_channel(command.channel)
        except ValueError as e:
            log.warning("Ignoring loadSuite: %s", e)
            return

        url = URL(command.url)
        local, sandboxed = channel_pair()
        listener = RemoteListener(
            Multiplexer(ChannelTransport(sandboxed)),
            source_loader=lambda request: self._fetch_source(url, request),
        )
        sandbox = Sandbox(id=command.id, channel=channel)
        sandbox.tasks.append(asyncio.create_task(listener.run()))
        sandbox.tasks.append(asyncio.create_task(pipe(local, channel)))
        self.sandboxes.add(sandbox)

    async def _fetch_source(self, url: URL, request: LoadRequest) -> str:
        """Fetch the suite from the runner's server.

        Raises:
            LoadError: If the server does not serve the suite

        """
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    raise LoadError(
                        f"Error getting {url}: {response.status} {response.reason}"
                    )
                return await response.text()
        except aiohttp.ClientError as e:
            raise LoadError(f"Error getting {url}: {e}") from e

    async def _ping(self, root: VirtualChannel) -> None:
        while not root.closed:
            self._send(HostCommand(command="ping"))
            await asyncio.sleep(self.ping_interval)

    def _send(self, command: HostCommand) -> None:
        if self._multiplexer is None or self._multiplexer.root.closed:
            return
        self._multiplexer.root.send(command.to_wire())


def manager_url(url: str) -> URL:
    """Return the manager WebSocket URL for a control page or manager URL."""
    parsed = URL(url)
    if parsed.scheme in ("ws", "wss"):
        return parsed
    if "managerUrl" not in parsed.query:
        raise ValueError(f"{url} has no managerUrl parameter")
    return URL(parsed.query["managerUrl"])


async def run(url: URL) -> None:
    async with aiohttp.ClientSession() as session:
        await RemoteHost(session).run(url)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Host browser test suites",
        usage="%(prog)s [--verbose] [BROWSER_FLAGS...] URL",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    args, rest = parser.parse_known_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    urls = [arg for arg in rest if arg.startswith(URL_SCHEMES)]
    if not urls:
        parser.error("expected a control page or manager WebSocket URL")
    try:
        url = manager_url(urls[-1])
    except ValueError as e:
        parser.error(str(e))
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(url))


if __name__ == "__main__":  # pragma: no cover
    main()
