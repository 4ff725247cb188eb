"""Platform adapter running suites in a headless JavaScript runtime."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from platform_runner.models.platform import SuitePlatform
from platform_runner.models.runtime import Runtime
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import StreamTransport
from platform_runner.platforms.base import (
    PlatformAdapter,
    PlatformHandle,
    wait_for_connection,
)
from platform_runner.platforms.node.config import NodeConfig
from platform_runner.platforms.process import Backend

log = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "node"

type _Streams = tuple[asyncio.StreamReader, asyncio.StreamWriter]


@dataclass(kw_only=True)
class NodeAdapter(PlatformAdapter):
    """Runs each suite in its own runtime process.

    The process is told to connect back to a loopback socket that accepts
    exactly one connection, which then carries the suite's channels.
    """

    config: NodeConfig
    _backends: set[Backend] = field(default_factory=set, repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, runtime: Runtime, config: NodeConfig
    ) -> AsyncGenerator["NodeAdapter", None]:
        """Create adapter that terminates its processes on exit."""
        adapter = cls(runtime=runtime, config=config)
        try:
            yield adapter
        finally:
            await adapter.close()

    def command(self, path: Path, port: int) -> list[str]:
        return [
            self.config.executable(DEFAULT_EXECUTABLE),
            *self.config.arguments,
            str(path),
            "--connect",
            f"{self.config.host}:{port}",
        ]

    async def start(self, path: Path, platform: SuitePlatform) -> PlatformHandle:
        connected: asyncio.Future[_Streams] = (
            asyncio.get_running_loop().create_future()
        )

        def accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if connected.done():
                log.warning("Refusing extra connection to %s", self.name)
                writer.close()
                return
            connected.set_result((reader, writer))

        server = await asyncio.start_server(accept, self.config.host, 0)
        port = server.sockets[0].getsockname()[1]
        backend = Backend(
            self.runtime.name,
            self.command(path, port),
            working_directory=self.config.working_directory,
            environment=self.config.environment,
            grace_period=self.config.grace_period,
        )
        self._backends.add(backend)
        try:
            reader, writer = await wait_for_connection(
                connected, backend.on_exit, self.name
            )
        except BaseException:
            self._backends.discard(backend)
            await backend.close()
            raise
        finally:
            server.close()

        multiplexer = Multiplexer(StreamTransport(reader, writer))

        async def close() -> None:
            await backend.close()
            self._backends.discard(backend)

        return PlatformHandle(
            name=self.name,
            multiplexer=multiplexer,
            on_exit=backend.on_exit,
            _close=close,
        )

    async def close(self) -> None:
        backends = list(self._backends)
        self._backends.clear()
        await asyncio.gather(*(backend.close() for backend in backends))
