"""Physical transports that carry multiplexer frames."""

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
from aiohttp import web

from platform_runner.errors import ChannelClosedError, ChannelResetError, ProtocolError
from platform_runner.multiplex.channel import Channel, channel_pair

log = logging.getLogger(__name__)


class Transport(ABC):
    """A duplex stream of JSON frames."""

    @abstractmethod
    def send(self, frame: Any) -> None:
        """Queue a frame for sending; frames are sent in call order.

        Raises:
            ChannelClosedError: If the transport was closed

        """

    @abstractmethod
    async def receive(self) -> Any | None:
        """Return the next frame, or None once the peer has gone away.

        Raises:
            ProtocolError: If the peer sent something that is not a frame

        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport; idempotent."""


class ChannelTransport(Transport):
    """Uses a channel as the transport of a nested multiplexer."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    def send(self, frame: Any) -> None:
        self.channel.send(frame)

    async def receive(self) -> Any | None:
        try:
            return await self.channel.receive()
        except ChannelClosedError:
            return None

    async def close(self) -> None:
        self.channel.close()


def memory_transport_pair(*, sync: bool = True) -> tuple[Transport, Transport]:
    """Create two in-process transports connected to each other."""
    local, foreign = channel_pair(sync=sync)
    return ChannelTransport(local), ChannelTransport(foreign)


class StreamTransport(Transport):
    """Newline-delimited JSON over asyncio streams.

    Used for subprocess stdio and loopback sockets.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    def send(self, frame: Any) -> None:
        if self._closed:
            raise ChannelClosedError("Transport is closed")
        if self._writer.is_closing():
            raise ChannelResetError("Stream is closed")
        self._writer.write(json.dumps(frame).encode() + b"\n")

    async def receive(self) -> Any | None:
        if self._closed:
            return None
        try:
            line = await self._reader.readline()
        except ConnectionError:
            return None
        if not line:
            return None
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid frame {line[:200]!r}: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError):
            await self._writer.wait_closed()


_CLOSE = object()


class WebSocketTransport(Transport):
    """JSON text messages over an aiohttp WebSocket, client or server side."""

    def __init__(
        self, ws: web.WebSocketResponse | aiohttp.ClientWebSocketResponse
    ) -> None:
        self._ws = ws
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._writer = asyncio.create_task(self._write_frames(), name="ws-writer")

    def send(self, frame: Any) -> None:
        if self._closed:
            raise ChannelClosedError("Transport is closed")
        if self._writer.done():
            raise ChannelResetError("WebSocket is closed")
        self._outbox.put_nowait(frame)

    async def _write_frames(self) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is _CLOSE:
                return
            try:
                await self._ws.send_json(frame)
            except ConnectionError as e:
                log.debug("WebSocket write failed: %s", e)
                return

    async def receive(self) -> Any | None:
        message = await self._ws.receive()
        if message.type == aiohttp.WSMsgType.TEXT:
            try:
                return json.loads(message.data)
            except json.JSONDecodeError as e:
                raise ProtocolError(f"Invalid frame {message.data[:200]!r}") from e
        if message.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
            aiohttp.WSMsgType.ERROR,
        ):
            return None
        raise ProtocolError(f"Unexpected WebSocket message type {message.type!r}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)
        with contextlib.suppress(ConnectionError):
            await self._writer
            await self._ws.close()
