"""Embedded HTTP server that browser control pages talk to."""

import asyncio
import logging
from importlib import resources
from pathlib import Path

from aiohttp import web
from yarl import URL

log = logging.getLogger(__name__)

CONTROL_PAGE = "host.html"


class BrowserServer:
    """Serves the control page, its WebSocket, and suite sources.

    Routes:
        `/`                    the control page
        `/ws`                  the control page's connection back to the runner
        `/suites/<id>/<name>`  source of a suite registered with `add_suite`

    The WebSocket route accepts exactly one connection per call to
    `expect_connection`; any other connection is refused.
    """

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self._suites: dict[int, Path] = {}
        self._connection: asyncio.Future[web.WebSocketResponse] | None = None
        self._released = asyncio.Event()
        self._port: int | None = None

        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/ws", self._handle_websocket)
        app.router.add_get("/suites/{id}/{name}", self._handle_suite)
        self._runner = web.AppRunner(app)

    @property
    def url(self) -> URL:
        if self._port is None:
            raise RuntimeError("Server is not running")
        return URL.build(scheme="http", host=self.host, port=self._port, path="/")

    @property
    def manager_url(self) -> URL:
        return self.url.with_scheme("ws") / "ws"

    @property
    def page_url(self) -> URL:
        """Where to point the browser."""
        return self.url.with_query(managerUrl=str(self.manager_url))

    async def start(self) -> None:
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, 0)
        await site.start()
        self._port = self._runner.addresses[0][1]
        log.debug("Browser server listening on %s", self.url)

    def expect_connection(self) -> asyncio.Future[web.WebSocketResponse]:
        """Accept the next control page connection and resolve with it."""
        if self._connection is not None and not self._connection.done():
            raise RuntimeError("Already waiting for a control page")
        self._connection = asyncio.get_running_loop().create_future()
        return self._connection

    def add_suite(self, suite_id: int, path: Path) -> URL:
        """Serve `path` and return the URL it is served at."""
        self._suites[suite_id] = path
        return self.url / "suites" / str(suite_id) / path.name

    def remove_suite(self, suite_id: int) -> None:
        self._suites.pop(suite_id, None)

    async def close(self) -> None:
        self._released.set()
        if self._connection is not None and not self._connection.done():
            self._connection.cancel()
        await self._runner.cleanup()

    async def _handle_index(self, request: web.Request) -> web.Response:
        page = resources.files(__package__).joinpath("static", CONTROL_PAGE)
        return web.Response(text=page.read_text(), content_type="text/html")

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        if self._connection is None or self._connection.done():
            log.warning("Refusing unexpected control page connection")
            raise web.HTTPConflict(text="A control page is already connected")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._connection.set_result(ws)
        # The connection is served by the manager; keep it open until released.
        await self._released.wait()
        return ws

    async def _handle_suite(self, request: web.Request) -> web.Response:
        try:
            suite_id = int(request.match_info["id"])
        except ValueError:
            raise web.HTTPNotFound() from None
        path = self._suites.get(suite_id)
        if path is None or path.name != request.match_info["name"]:
            raise web.HTTPNotFound()
        try:
            source = await asyncio.to_thread(path.read_text)
        except OSError as e:
            log.error("Could not read suite %s: %s", path, e)
            raise web.HTTPNotFound() from e
        return web.Response(text=source, content_type="text/x-python")
