"""Duplex message channels and the plumbing shared by every channel type."""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from platform_runner.errors import ChannelClosedError, ChannelResetError

log = logging.getLogger(__name__)


class Channel(Protocol):
    """A duplex stream of JSON-safe messages."""

    @property
    def closed(self) -> bool: ...

    def send(self, message: Any) -> None: ...

    async def receive(self) -> Any: ...

    def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...


class _End:
    """Inbox marker for the end of a channel's stream."""

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error


class QueueChannel:
    """Inbound half shared by local and virtual channels.

    Messages are buffered in an unbounded queue until read with `receive` or
    async iteration. A listener registered with `listen` is called
    synchronously for each message instead, in arrival order.
    """

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._listener: Callable[[Any], None] | None = None
        self._end: _End | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether either side has closed this channel."""
        return self._closed or self._end is not None

    @property
    def ended(self) -> bool:
        """Whether the inbound stream is over."""
        return self._end is not None

    def listen(self, listener: Callable[[Any], None]) -> None:
        """Deliver every buffered and future message to `listener`."""
        if self._listener is not None:
            raise RuntimeError("Channel already has a listener")
        self._listener = listener
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _End):
                self._inbox.put_nowait(item)
                return
            self._call_listener(item)

    def _deliver(self, message: Any) -> None:
        if self._end is not None:
            log.debug("Dropping message for ended channel: %r", message)
            return
        if self._listener is not None:
            self._call_listener(message)
        else:
            self._inbox.put_nowait(message)

    def _call_listener(self, message: Any) -> None:
        assert self._listener is not None
        try:
            self._listener(message)
        except Exception as e:
            log.exception("Channel listener failed")
            self._finish(e)

    def _finish(self, error: BaseException | None = None) -> None:
        """End the inbound stream, optionally with an error."""
        if self._end is not None:
            return
        self._end = _End(error)
        self._inbox.put_nowait(self._end)

    async def receive(self) -> Any:
        """Wait for the next message.

        Raises:
            ChannelClosedError: If the channel was closed by either side
            ChannelResetError: If the underlying connection went away
            ProtocolError: If the underlying connection violated the protocol

        """
        item = await self._inbox.get()
        if isinstance(item, _End):
            self._inbox.put_nowait(item)
            if item.error is not None:
                raise item.error
            raise ChannelClosedError("Channel is closed")
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            try:
                message = await self.receive()
            except ChannelResetError:
                raise
            except ChannelClosedError:
                return
            yield message


class LocalChannel(QueueChannel):
    """One end of an in-process channel pair."""

    def __init__(self, *, sync: bool) -> None:
        super().__init__()
        self._sync = sync
        self._peer: LocalChannel | None = None

    def send(self, message: Any) -> None:
        """Send `message` to the other end.

        In sync mode the peer has the message (or its listener has run)
        before this returns; otherwise delivery happens on the next loop
        iteration, still in order.
        """
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        if self._end is not None:
            return
        assert self._peer is not None
        self._schedule(self._peer._deliver, message)

    def close(self) -> None:
        """Close both directions; idempotent."""
        if self._closed:
            return
        assert self._peer is not None
        self._closed = True
        self._finish()
        self._schedule(self._peer._finish, None)

    def _schedule(self, fn: Callable[[Any], None], arg: Any) -> None:
        if self._sync:
            fn(arg)
        else:
            asyncio.get_running_loop().call_soon(fn, arg)


def channel_pair(*, sync: bool = True) -> tuple[LocalChannel, LocalChannel]:
    """Create two connected in-process channels."""
    local = LocalChannel(sync=sync)
    foreign = LocalChannel(sync=sync)
    local._peer = foreign
    foreign._peer = local
    return local, foreign


async def pipe(a: Channel, b: Channel) -> None:
    """Forward messages between `a` and `b` until either one ends.

    Both channels are closed when this returns.
    """

    async def forward(source: Channel, sink: Channel) -> None:
        try:
            async for message in source:
                if sink.closed:
                    return
                sink.send(message)
        except ChannelClosedError as e:
            log.debug("Pipe stopped: %s", e)

    tasks = [
        asyncio.create_task(forward(a, b)),
        asyncio.create_task(forward(b, a)),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        a.close()
        b.close()
