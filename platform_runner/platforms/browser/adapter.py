"""Platform adapter running suites in a browser."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from platform_runner.errors import PlatformNotFoundError
from platform_runner.models.platform import SuitePlatform
from platform_runner.models.runtime import Runtime
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import ChannelTransport, WebSocketTransport
from platform_runner.platforms.base import (
    PlatformAdapter,
    PlatformHandle,
    wait_for_connection,
)
from platform_runner.platforms.browser.browser import Browser
from platform_runner.platforms.browser.config import BrowserConfig
from platform_runner.platforms.browser.kinds import BROWSER_KINDS, BrowserKind
from platform_runner.platforms.browser.manager import BrowserManager
from platform_runner.platforms.browser.server import BrowserServer

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class BrowserAdapter(PlatformAdapter):
    """Runs suites in one browser launched on first use.

    The browser opens the control page of an embedded server, which
    connects back over a WebSocket. Every suite then runs on its own virtual
    channel of that connection. If the browser goes away it is relaunched
    for the next suite.
    """

    kind: BrowserKind
    config: BrowserConfig
    _server: BrowserServer | None = field(default=None, repr=False)
    _browser: Browser | None = field(default=None, repr=False)
    _manager: BrowserManager | None = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, runtime: Runtime, config: BrowserConfig
    ) -> AsyncGenerator["BrowserAdapter", None]:
        """Create adapter that closes its browser and server on exit."""
        try:
            kind = BROWSER_KINDS[runtime.root.identifier]
        except KeyError:
            raise PlatformNotFoundError(
                f"'{runtime.identifier}' is not a browser platform"
            ) from None
        adapter = cls(runtime=runtime, kind=kind, config=config)
        try:
            yield adapter
        finally:
            await adapter.close()

    @property
    def manager(self) -> BrowserManager | None:
        return self._manager

    async def start(self, path: Path, platform: SuitePlatform) -> PlatformHandle:
        manager, browser = await self._connect()
        suite = manager.load_suite(path)
        multiplexer = Multiplexer(ChannelTransport(suite.channel))

        async def close() -> None:
            manager.close_suite(suite.id)

        return PlatformHandle(
            name=self.name,
            multiplexer=multiplexer,
            on_exit=browser.on_exit,
            liveness=manager,
            _close=close,
        )

    async def _connect(self) -> tuple[BrowserManager, Browser]:
        async with self._lock:
            if (
                self._manager is not None
                and self._browser is not None
                and not self._manager.closed
                and not self._browser.on_exit.done()
            ):
                return self._manager, self._browser

            await self._close_browser()
            if self._server is None:
                self._server = BrowserServer(self.config.host)
                await self._server.start()

            connection = self._server.expect_connection()
            log.info("Launching %s at %s", self.kind.name, self._server.page_url)
            browser = Browser(self.kind, self._server.page_url, self.config)
            self._browser = browser
            try:
                ws = await wait_for_connection(connection, browser.on_exit, self.name)
            except BaseException:
                connection.cancel()
                await self._close_browser()
                raise

            manager = BrowserManager(Multiplexer(WebSocketTransport(ws)), self._server)
            self._manager = manager
            return manager, browser

    async def _close_browser(self) -> None:
        manager, browser = self._manager, self._browser
        self._manager = self._browser = None
        if manager is not None:
            await manager.close()
        if browser is not None:
            await browser.close()

    async def close(self) -> None:
        await self._close_browser()
        if self._server is not None:
            await self._server.close()
            self._server = None
