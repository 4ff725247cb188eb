"""Platform adapter running suites in a child Python process."""

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from platform_runner.models.platform import SuitePlatform
from platform_runner.models.runtime import Runtime
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import StreamTransport
from platform_runner.platforms.base import PlatformAdapter, PlatformHandle
from platform_runner.platforms.process import Backend
from platform_runner.platforms.vm.config import VmConfig

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class VmAdapter(PlatformAdapter):
    """Runs each suite in its own interpreter, talking over its stdio."""

    config: VmConfig
    _backends: set[Backend] = field(default_factory=set, repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, runtime: Runtime, config: VmConfig
    ) -> AsyncGenerator["VmAdapter", None]:
        """Create adapter that terminates its processes on exit."""
        adapter = cls(runtime=runtime, config=config)
        try:
            yield adapter
        finally:
            await adapter.close()

    def command(self, path: Path) -> list[str]:
        return [
            self.config.executable(sys.executable),
            *self.config.arguments,
            "-m",
            self.config.module,
            str(path),
        ]

    async def start(self, path: Path, platform: SuitePlatform) -> PlatformHandle:
        backend = Backend(
            self.runtime.name,
            self.command(path),
            working_directory=self.config.working_directory,
            environment=self.config.environment,
            stdio=True,
            grace_period=self.config.grace_period,
        )
        self._backends.add(backend)
        try:
            process = await backend.started()
        except BaseException:
            self._backends.discard(backend)
            raise

        assert process.stdout is not None and process.stdin is not None
        log.debug("Started %s for %s (pid %d)", self.name, path, process.pid)
        multiplexer = Multiplexer(StreamTransport(process.stdout, process.stdin))

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
