"""Background platform processes with race-free shutdown."""

import asyncio
import contextlib
import logging
import os
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from platform_runner.errors import ApplicationException

log = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


@dataclass(frozen=True, kw_only=True)
class ExitResult:
    """How a platform process exited."""

    exit_code: int


class Backend:
    """A platform process launched in the background.

    Creating a backend never raises: the launch happens in a task and a
    failure to start the executable is reported through `on_exit` as an
    `ApplicationException("Failed to run <name>: <reason>")`.

    `close` may be called at any time, including before the process exists.
    In that case termination is deferred until the launch completes and then
    applied immediately, so no process is left behind.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        *,
        working_directory: Path | None = None,
        environment: Mapping[str, str] | None = None,
        stdio: bool = False,
        grace_period: float = 5.0,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.name = name
        self.command = tuple(command)
        self.grace_period = grace_period
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.on_exit: asyncio.Future[ExitResult] = loop.create_future()
        self.on_exit.add_done_callback(self._log_exit)
        self._started: asyncio.Future[asyncio.subprocess.Process | None] = (
            loop.create_future()
        )
        self._close_task: asyncio.Task[None] | None = None
        self._task = asyncio.create_task(
            self._run(working_directory, environment, stdio),
            name=f"backend-{name}",
        )

    @property
    def closed(self) -> bool:
        return self._close_task is not None

    async def process(self) -> asyncio.subprocess.Process | None:
        """Wait for the launch; None if the executable could not be started."""
        return await asyncio.shield(self._started)

    async def started(self) -> asyncio.subprocess.Process:
        """Wait for the launch and return the process.

        Raises:
            ApplicationException: If the executable could not be started

        """
        process = await self.process()
        if process is None:
            error = self.on_exit.exception()
            assert error is not None
            raise error
        return process

    async def _run(
        self,
        working_directory: Path | None,
        environment: Mapping[str, str] | None,
        stdio: bool,
    ) -> None:
        env = {**os.environ, **environment} if environment else None
        pipe = asyncio.subprocess.PIPE
        log.debug("Starting %s: %s", self.name, " ".join(self.command))
        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=working_directory,
                env=env,
                stdin=pipe if stdio else asyncio.subprocess.DEVNULL,
                stdout=pipe if stdio else asyncio.subprocess.DEVNULL,
                stderr=pipe,
            )
        except (OSError, ValueError) as e:
            # ValueError: arguments Popen rejects, such as embedded NUL bytes.
            reason = getattr(e, "strerror", None) or e
            self.on_exit.set_exception(
                ApplicationException(f"Failed to run {self.name}: {reason}")
            )
            return
        finally:
            # close() waits on this whatever the launch outcome.
            self._started.set_result(process)

        assert process.stderr is not None
        stderr_task = asyncio.create_task(self._drain_stderr(process.stderr))
        exit_code = await process.wait()
        _, pending = await asyncio.wait([stderr_task], timeout=1)
        for task in pending:
            task.cancel()
        self.on_exit.set_result(ExitResult(exit_code=exit_code))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            self.stderr_tail.append(line)
            log.debug("[%s] %s", self.name, line)

    def _log_exit(self, future: asyncio.Future[ExitResult]) -> None:
        if future.cancelled():
            return
        if (error := future.exception()) is not None:
            log.debug("%s did not start: %s", self.name, error)
        else:
            log.debug("%s exited with code %d", self.name, future.result().exit_code)

    async def close(self) -> None:
        """Terminate the process, escalating to a kill after the grace period.

        Idempotent; concurrent callers wait for the same shutdown.
        """
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._terminate())
        await asyncio.shield(self._close_task)

    async def _terminate(self) -> None:
        process = await self.process()
        if process is None:
            return

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), self.grace_period)
            except TimeoutError:
                log.warning(
                    "%s did not exit within %.1fs, killing it",
                    self.name,
                    self.grace_period,
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        await asyncio.wait([self._task])
