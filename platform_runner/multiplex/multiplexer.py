"""Multiplexing of many virtual channels over one transport.

Every frame on the transport is a JSON object tagged with the id of the
virtual channel it belongs to:

    {"id": 3, "message": {...}}   a message for channel 3
    {"id": 3, "close": true}      channel 3 was closed by the sender

Channel 0 is the root channel and exists on both ends from the start. A
channel created locally is announced to the peer by its id; the peer claims
it with `virtual_channel(id)`. Each channel uses a pair of wire ids so both
ends can create channels at the same time without coordinating: the creator
sends on `id` and receives on `id + 1`, the claimer does the opposite.
"""

import asyncio
import logging
from typing import Any

from platform_runner.errors import (
    ChannelClosedError,
    ChannelResetError,
    ProtocolError,
)
from platform_runner.multiplex.channel import QueueChannel
from platform_runner.multiplex.transport import Transport

log = logging.getLogger(__name__)

ROOT_ID = 0


class VirtualChannel(QueueChannel):
    """A logical duplex channel carried by a `Multiplexer`."""

    def __init__(
        self,
        multiplexer: "Multiplexer",
        *,
        id: int,
        input_id: int,
        output_id: int,
        parent: "VirtualChannel | None" = None,
    ) -> None:
        super().__init__()
        self.id = id
        self.input_id = input_id
        self.output_id = output_id
        self.parent = parent
        self._multiplexer = multiplexer
        self._children: set[VirtualChannel] = set()

    def __repr__(self) -> str:
        return f"VirtualChannel(id={self.id}, closed={self.closed})"

    def send(self, message: Any) -> None:
        """Send a message to the peer's end of this channel.

        Messages sent after the peer closed the channel are dropped.

        Raises:
            ChannelClosedError: If this end was closed
            ChannelResetError: If the multiplexer's transport is gone

        """
        if self._closed:
            raise ChannelClosedError(f"Channel {self.id} is closed")
        if self._end is not None:
            if self._end.error is not None:
                raise self._end.error
            log.debug("Dropping message sent on remotely closed channel %d", self.id)
            return
        self._multiplexer._send_frame({"id": self.output_id, "message": message})

    def virtual_channel(self, id: int | None = None) -> "VirtualChannel":
        """Create or claim a channel that is closed along with this one."""
        child = self._multiplexer._create_channel(id, parent=self)
        if self.closed:
            child.close()
        else:
            self._children.add(child)
        return child

    def close(self) -> None:
        """Close this channel and every channel created from it; idempotent."""
        if self._closed:
            return
        self._closed = True
        for child in list(self._children):
            child.close()
        self._children.clear()
        if self._end is None:
            self._multiplexer._send_close(self)
        self._finish()
        self._multiplexer._forget(self)

    def _remote_close(self) -> None:
        for child in list(self._children):
            child.close()
        self._children.clear()
        self._finish()

    def _finish(self, error: BaseException | None = None) -> None:
        super()._finish(error)
        if self.parent is not None:
            self.parent._children.discard(self)


class Multiplexer:
    """Splits one transport into independent virtual channels.

    The multiplexer reads frames in a background task and dispatches them to
    their channels in order. A malformed frame fails the whole multiplexer:
    every open channel raises the `ProtocolError` from `receive`. When the
    transport ends, every open channel raises `ChannelResetError`.
    """

    def __init__(
        self, transport: Transport, *, allow_remote_channels: bool = True
    ) -> None:
        self._transport = transport
        self._allow_remote_channels = allow_remote_channels
        self._channels: dict[int, VirtualChannel] = {}
        self._pending: dict[int, list[dict[str, Any]]] = {}
        self._retired: set[int] = set()
        self._next_id = 1
        self._error: BaseException | None = None
        self._done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        self.root = VirtualChannel(
            self, id=ROOT_ID, input_id=ROOT_ID, output_id=ROOT_ID
        )
        self._channels[ROOT_ID] = self.root
        self._reader = asyncio.create_task(
            self._read_frames(), name="multiplexer-reader"
        )

    @property
    def error(self) -> BaseException | None:
        """The error that ended the multiplexer, if any."""
        return self._error

    @property
    def is_closed(self) -> bool:
        return self._done.done()

    def virtual_channel(self, id: int | None = None) -> VirtualChannel:
        """Create a new channel, or claim one announced by the peer.

        Raises:
            ValueError: If `id` was already claimed

        """
        return self._create_channel(id)

    async def wait_closed(self) -> None:
        """Wait until the transport is gone."""
        await asyncio.shield(self._done)

    async def close(self) -> None:
        """Close the transport; every open channel is reset."""
        if self._reader is not asyncio.current_task():
            self._reader.cancel()
        self._shutdown(ChannelResetError("Multiplexer was closed"))
        await self._transport.close()

    def _create_channel(
        self, id: int | None, parent: VirtualChannel | None = None
    ) -> VirtualChannel:
        if id is None:
            output_id = self._next_id
            input_id = self._next_id + 1
            self._next_id += 2
            channel_id = output_id
        else:
            input_id = id
            output_id = id + 1
            channel_id = id
            if input_id in self._channels or input_id in self._retired:
                raise ValueError(f"Virtual channel {id} has already been claimed")

        channel = VirtualChannel(
            self, id=channel_id, input_id=input_id, output_id=output_id, parent=parent
        )
        if self._error is not None:
            channel._finish(self._error)
            return channel

        self._channels[input_id] = channel
        for frame in self._pending.pop(input_id, []):
            self._dispatch_to(channel, frame)
        return channel

    def _send_frame(self, frame: dict[str, Any]) -> None:
        if self._error is not None:
            raise self._error
        self._transport.send(frame)

    def _send_close(self, channel: VirtualChannel) -> None:
        if self._error is not None:
            return
        try:
            self._transport.send({"id": channel.output_id, "close": True})
        except ChannelClosedError:
            log.debug("Transport gone while closing channel %d", channel.id)

    def _forget(self, channel: VirtualChannel) -> None:
        if self._channels.get(channel.input_id) is channel:
            del self._channels[channel.input_id]
            self._retired.add(channel.input_id)

    async def _read_frames(self) -> None:
        error: BaseException = ChannelResetError("Connection reset by peer")
        try:
            while True:
                frame = await self._transport.receive()
                if frame is None:
                    break
                self._dispatch(frame)
        except ProtocolError as e:
            log.warning("Multiplexer protocol error: %s", e)
            error = e
        except ChannelResetError as e:
            error = e
        except (ChannelClosedError, OSError) as e:
            error = ChannelResetError(str(e))
        finally:
            self._shutdown(error)
        await self._transport.close()

    def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            raise ProtocolError(f"Malformed frame, expected an object: {frame!r}")
        channel_id = frame.get("id")
        if not isinstance(channel_id, int) or isinstance(channel_id, bool):
            raise ProtocolError(f"Malformed frame, missing channel id: {frame!r}")
        if "message" not in frame and frame.get("close") is not True:
            raise ProtocolError(f"Malformed frame, no message or close: {frame!r}")

        channel = self._channels.get(channel_id)
        if channel is not None:
            self._dispatch_to(channel, frame)
        elif channel_id in self._retired:
            log.debug("Dropping frame for closed channel %d", channel_id)
        elif self._allow_remote_channels:
            self._pending.setdefault(channel_id, []).append(frame)
        else:
            raise ProtocolError(f"Frame for unknown channel {channel_id}")

    def _dispatch_to(self, channel: VirtualChannel, frame: dict[str, Any]) -> None:
        if frame.get("close") is True:
            channel._remote_close()
            self._forget(channel)
        else:
            channel._deliver(frame["message"])

    def _shutdown(self, error: BaseException) -> None:
        if self._done.done():
            return
        self._error = error
        for channel in list(self._channels.values()):
            channel._children.clear()
            channel._finish(error)
        self._channels.clear()
        self._pending.clear()
        self._done.set_result(None)
