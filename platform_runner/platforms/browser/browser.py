"""A browser process pointed at a URL."""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path

from yarl import URL

from platform_runner.platforms.browser.kinds import BrowserKind
from platform_runner.platforms.process import Backend, ExitResult
from platform_runner.platforms.settings import ExecutableSettings

log = logging.getLogger(__name__)


class Browser:
    """A browser opened on `url` with a private, temporary profile.

    Like `Backend`, creating a browser never raises; launch failures are
    reported through `on_exit`. The profile directory is removed on close.
    """

    def __init__(
        self,
        kind: BrowserKind,
        url: URL,
        settings: ExecutableSettings | None = None,
    ) -> None:
        settings = settings or ExecutableSettings()
        self.kind = kind
        self.url = url
        self.directory = Path(tempfile.mkdtemp(prefix="platform_runner_browser_"))
        executable = settings.executable(kind.default_executable())
        command = [
            executable,
            *settings.arguments,
            *kind.build_arguments(url, self.directory, settings.headless),
        ]
        self._backend = Backend(
            kind.name,
            command,
            working_directory=settings.working_directory,
            environment=settings.environment,
            grace_period=settings.grace_period,
        )

    @property
    def on_exit(self) -> asyncio.Future[ExitResult]:
        return self._backend.on_exit

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._backend.stderr_tail)

    async def close(self) -> None:
        """Close the browser and delete its profile; idempotent."""
        await self._backend.close()
        if self.directory.exists():
            log.debug("Removing browser profile %s", self.directory)
            await asyncio.to_thread(shutil.rmtree, self.directory, True)
