"""Tests for multiplexing over a real WebSocket connection."""

from collections.abc import AsyncIterator

import aiohttp
import pytest
from aiohttp import web

from platform_runner.errors import ChannelClosedError
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import WebSocketTransport


async def echo(request: web.Request) -> web.WebSocketResponse:
    """Echo messages on the root channel and on the first virtual channel.

    A `"bye"` on the root channel closes the connection.
    """
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    multiplexer = Multiplexer(WebSocketTransport(ws))
    child = multiplexer.virtual_channel(1)
    try:
        async for message in multiplexer.root:
            if message == "bye":
                break
            multiplexer.root.send({"echo": message})
            child.send({"echo": await child.receive()})
    except ChannelClosedError:
        pass
    finally:
        await multiplexer.close()
    return ws


@pytest.fixture
async def server_url() -> AsyncIterator[str]:
    app = web.Application()
    app.router.add_get("/ws", echo)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    yield f"ws://127.0.0.1:{port}/ws"
    await runner.cleanup()


async def test_channels_over_websocket(server_url: str) -> None:
    """Root and virtual channels carry JSON messages both ways."""
    async with (
        aiohttp.ClientSession() as session,
        session.ws_connect(server_url) as ws,
    ):
        multiplexer = Multiplexer(WebSocketTransport(ws))
        child = multiplexer.virtual_channel()

        multiplexer.root.send({"n": 1})
        child.send(["a", None, 2.5])

        assert await multiplexer.root.receive() == {"echo": {"n": 1}}
        assert await child.receive() == {"echo": ["a", None, 2.5]}

        await multiplexer.close()


async def test_server_close_resets_channels(server_url: str) -> None:
    """Channels end when the other side closes the connection."""
    async with (
        aiohttp.ClientSession() as session,
        session.ws_connect(server_url) as ws,
    ):
        multiplexer = Multiplexer(WebSocketTransport(ws))
        child = multiplexer.virtual_channel()

        multiplexer.root.send("bye")

        with pytest.raises(ChannelClosedError):
            await child.receive()
        await multiplexer.close()
