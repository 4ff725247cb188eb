"""The runner's side of a browser's control page connection."""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from pathlib import Path

from platform_runner.errors import ProtocolError
from platform_runner.multiplex.multiplexer import Multiplexer, VirtualChannel
from platform_runner.platforms.browser.server import BrowserServer
from platform_runner.protocol import HostCommand, parse_host_command

log = logging.getLogger(__name__)

PING_TIMEOUT = 5.0


@dataclass(frozen=True, kw_only=True)
class ManagedSuite:
    """A suite loaded into the browser, with the channel it runs on."""

    id: int
    channel: VirtualChannel


class BrowserManager:
    """Loads suites into one browser and tracks its debugging state.

    Every suite runs on its own virtual channel of the control page
    connection. The control page pings once a second; `responsive` tells a
    hung browser apart from one that is merely paused in a debugger.
    """

    def __init__(self, multiplexer: Multiplexer, server: BrowserServer) -> None:
        self.multiplexer = multiplexer
        self._server = server
        self._suite_ids = itertools.count(1)
        self._suites: dict[int, ManagedSuite] = {}
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._restart_requested = False
        self._loop = asyncio.get_running_loop()
        self.last_ping: float | None = None
        multiplexer.root.listen(self._on_message)

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def closed(self) -> bool:
        return self.multiplexer.is_closed

    @property
    def responsive(self) -> bool:
        """Whether the browser pinged within the last `PING_TIMEOUT` seconds."""
        if self.last_ping is None:
            return not self.closed
        return self._loop.time() - self.last_ping < PING_TIMEOUT

    def load_suite(self, path: Path) -> ManagedSuite:
        """Ask the control page to load the suite at `path`."""
        suite_id = next(self._suite_ids)
        url = self._server.add_suite(suite_id, path)
        channel = self.multiplexer.virtual_channel()
        suite = ManagedSuite(id=suite_id, channel=channel)
        self._suites[suite_id] = suite
        self._send(
            HostCommand(
                command="loadSuite", channel=channel.id, id=suite_id, url=str(url)
            )
        )
        log.debug("Loading %s as suite %d from %s", path, suite_id, url)
        return suite

    def close_suite(self, suite_id: int) -> None:
        """Unload a suite from the control page; unknown ids are ignored."""
        suite = self._suites.pop(suite_id, None)
        if suite is None:
            return
        suite.channel.close()
        self._server.remove_suite(suite_id)
        self._send(HostCommand(command="closeSuite", id=suite_id))

    def display_pause(self) -> None:
        """Show the paused overlay; tests are not timed out while it is up."""
        self._resumed.clear()
        self._send(HostCommand(command="displayPause"))

    def resume(self) -> None:
        """Hide the paused overlay, as when the user presses play."""
        self._resumed.set()
        self._send(HostCommand(command="resume"))

    async def pause_for_debugging(self) -> None:
        """Pause and wait until the user resumes from the control page."""
        self.display_pause()
        await self._resumed.wait()

    def take_restart_request(self) -> bool:
        requested = self._restart_requested
        self._restart_requested = False
        return requested

    async def close(self) -> None:
        for suite_id in list(self._suites):
            self.close_suite(suite_id)
        self._resumed.set()
        await self.multiplexer.close()

    def _on_message(self, message: object) -> None:
        try:
            command = parse_host_command(message)
        except ProtocolError as e:
            log.warning("Ignoring malformed message from the control page: %s", e)
            return

        match command.command:
            case "ping":
                self.last_ping = self._loop.time()
            case "resume":
                self._resumed.set()
            case "restart":
                log.info("Restart of the current test requested")
                self._restart_requested = True
            case _:
                log.warning("Ignoring unknown host command '%s'", command.command)

    def _send(self, command: HostCommand) -> None:
        if self.multiplexer.root.closed:
            log.debug("Control page is gone, not sending %s", command.command)
            return
        self.multiplexer.root.send(command.to_wire())
