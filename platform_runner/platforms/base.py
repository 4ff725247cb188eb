"""Abstract base class for platform adapters."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from platform_runner.errors import LoadError
from platform_runner.models.platform import SuitePlatform
from platform_runner.models.runtime import Runtime
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.platforms.process import ExitResult


class Liveness(Protocol):
    """What a remote display context reports about its debugging state."""

    @property
    def paused(self) -> bool:
        """Whether the platform is paused for interactive debugging."""

    @property
    def responsive(self) -> bool:
        """Whether the platform has shown signs of life recently."""

    async def pause_for_debugging(self) -> None:
        """Ask the platform to pause and wait until the user resumes it."""

    def take_restart_request(self) -> bool:
        """Return and clear whether the user asked to restart the current test."""


@dataclass(kw_only=True)
class PlatformHandle:
    """A suite's live connection to its platform.

    The suite conversation runs on `multiplexer.root`; per-test channels are
    created from the same multiplexer.
    """

    name: str
    multiplexer: Multiplexer
    on_exit: asyncio.Future[ExitResult] | None = None
    liveness: Liveness | None = None
    _close: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        """Close the suite's channels and release its backend; idempotent."""
        if self._closed:
            return
        self._closed = True
        self.multiplexer.root.close()
        await self.multiplexer.close()
        if self._close is not None:
            await self._close()


@dataclass(kw_only=True)
class PlatformAdapter(ABC):
    """Abstract base for platform adapters.

    An adapter knows how to start or attach to one kind of backend (a local
    process, a browser, a headless JavaScript runtime) and to turn it into a
    multiplexed connection for each suite it loads. Adapters are created
    through their manifest's factory, an async context manager that releases
    every backend on exit.
    """

    runtime: Runtime

    @abstractmethod
    async def start(self, path: Path, platform: SuitePlatform) -> PlatformHandle:
        """Start or attach to a backend for the suite at `path`.

        Args:
            path: Path of the suite to load
            platform: Platform the suite runs on

        Returns:
            Handle whose multiplexer carries the suite's channels

        Raises:
            ApplicationException: If the backend could not be launched
            LoadError: If the backend exited before connecting

        """

    @abstractmethod
    async def close(self) -> None:
        """Terminate every backend this adapter started; idempotent."""

    @property
    def name(self) -> str:
        return self.runtime.name


async def wait_for_connection[T](
    connected: asyncio.Future[T],
    on_exit: asyncio.Future[ExitResult],
    name: str,
) -> T:
    """Wait for a backend to connect back, failing if it exits first.

    Raises:
        ApplicationException: If the backend could not be launched
        LoadError: If the backend exited without connecting

    """
    await asyncio.wait([connected, on_exit], return_when=asyncio.FIRST_COMPLETED)
    if connected.done():
        return connected.result()
    result = on_exit.result()
    raise LoadError(f"{name} exited with code {result.exit_code} before connecting")
