"""The runner's side of the suite protocol for one suite on one platform."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path

from platform_runner.aggregator import RunAggregator
from platform_runner.errors import ChannelClosedError, ProtocolError
from platform_runner.models.platform import SuitePlatform
from platform_runner.models.result import TestState
from platform_runner.multiplex.multiplexer import VirtualChannel
from platform_runner.platforms.base import PlatformHandle
from platform_runner.protocol import (
    Error,
    Failed,
    LoadRequest,
    Passed,
    Print,
    RestartTest,
    Running,
    RunTest,
    Skipped,
    SuiteCommand,
    SuiteLoadError,
    TestInfo,
    parse_suite_load_result,
    parse_test_message,
)
from platform_runner.selector import PlatformSelector

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
COMPLETION_GRACE = 1.0


@dataclass(frozen=True, kw_only=True)
class SuiteOptions:
    """Per-suite policy taken from the run configuration."""

    timeout: float = 30.0
    load_timeout: float = 60.0
    retry: int = 0
    pause_after_load: bool = False
    known_variables: frozenset[str] | None = None


class _Outcome(Enum):
    DONE = auto()
    RESTART = auto()


def format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


class SuiteController:
    """Loads a suite over a platform handle and runs its tests one by one.

    Test channels are claimed under the suite's root channel, and each run of
    a test gets a fresh status channel under its test channel, so closing the
    root closes every one of them. A test that sends nothing for `timeout`
    seconds is force-closed and recorded as an error, except while the
    platform is paused for debugging.
    """

    def __init__(
        self,
        *,
        suite_id: int,
        path: Path,
        platform: SuitePlatform,
        handle: PlatformHandle,
        aggregator: RunAggregator,
        options: SuiteOptions | None = None,
    ) -> None:
        self.suite_id = suite_id
        self.path = path
        self.platform = platform
        self.handle = handle
        self.aggregator = aggregator
        self.options = options or SuiteOptions()

    async def run(self) -> None:
        """Drive the suite to completion, recording everything it reports.

        Failures of the suite are recorded in the aggregator rather than
        raised; only cancellation propagates.
        """
        try:
            await self._run()
        except ProtocolError as e:
            log.error(
                "Suite %s on %s broke the protocol: %s", self.path, self.platform, e
            )
            self.aggregator.suite_failed(self.suite_id, f"Protocol error: {e}")
        finally:
            self._send_close()

    async def _run(self) -> None:
        aggregator = self.aggregator
        aggregator.suite_loading(self.suite_id)
        tests = await self._load()
        if tests is None:
            return

        try:
            controls = [
                (info, self.handle.multiplexer.root.virtual_channel(info.channel))
                for info in tests
            ]
        except ValueError as e:
            raise ProtocolError(f"Invalid test channels: {e}") from e
        aggregator.suite_loaded(self.suite_id, [info.name for info in tests])
        aggregator.suite_running(self.suite_id)

        liveness = self.handle.liveness
        if self.options.pause_after_load and liveness is not None:
            log.info(
                "%s is paused for debugging, press play in the browser to continue",
                self.path,
            )
            await liveness.pause_for_debugging()

        for info, control in controls:
            await self._run_test(info, control)
            control.close()
        aggregator.suite_done(self.suite_id)

    async def _load(self) -> list[TestInfo] | None:
        root = self.handle.multiplexer.root
        request = LoadRequest(platform=self.platform.serialize(), path=str(self.path))
        try:
            root.send(request.to_wire())
            async with asyncio.timeout(self.options.load_timeout):
                result = parse_suite_load_result(await root.receive())
        except TimeoutError:
            message = (
                f"Timed out loading {self.path} after "
                f"{format_seconds(self.options.load_timeout)} seconds."
            )
            self._load_failed(message)
            return None
        except (ChannelClosedError, ProtocolError) as e:
            self._load_failed(self._connection_lost(e))
            return None

        if isinstance(result, SuiteLoadError):
            message = result.message
            if result.stack_trace:
                message = f"{message}\n{result.stack_trace}"
            self._load_failed(message)
            return None
        return list(result.tests)

    def _load_failed(self, message: str) -> None:
        log.error("Failed to load %s on %s: %s", self.path, self.platform, message)
        self.aggregator.suite_load_failed(self.suite_id, message)

    async def _run_test(self, info: TestInfo, control: VirtualChannel) -> None:
        aggregator = self.aggregator
        metadata = info.metadata
        skipped, skip_reason = metadata.skip, metadata.skip_reason
        if not skipped and metadata.test_on is not None:
            try:
                selector = PlatformSelector.parse(metadata.test_on)
                if self.options.known_variables is not None:
                    selector.validate(self.options.known_variables)
            except ValueError as e:
                aggregator.test_started(self.suite_id, info.name)
                aggregator.test_finished(
                    self.suite_id, info.name, TestState.ERROR, str(e)
                )
                return
            if not selector.evaluate(self.platform):
                skipped = True
                skip_reason = f"Not supported on {self.platform.runtime.name}"
        if skipped:
            aggregator.test_started(self.suite_id, info.name)
            aggregator.test_finished(
                self.suite_id, info.name, TestState.SKIPPED, skip_reason
            )
            return

        timeout = metadata.timeout or self.options.timeout
        retries_left = self.options.retry
        while True:
            outcome = await self._run_once(info, control, timeout)
            record = aggregator.test(self.suite_id, info.name)
            if outcome is _Outcome.RESTART:
                aggregator.test_restarted(self.suite_id, info.name)
                continue
            if record.state.is_success or retries_left <= 0:
                return
            if control.closed:
                return
            retries_left -= 1
            aggregator.retry(self.suite_id, info.name)

    async def _run_once(
        self, info: TestInfo, control: VirtualChannel, timeout: float
    ) -> _Outcome:
        name = info.name
        loop = asyncio.get_running_loop()
        liveness = self.handle.liveness

        try:
            status = control.virtual_channel()
            control.send(RunTest(channel=status.id).to_wire())
        except (ChannelClosedError, ProtocolError) as e:
            self._finish(name, TestState.ERROR, self._connection_lost(e))
            return _Outcome.DONE

        last_activity = loop.time()
        try:
            while True:
                if liveness is not None and liveness.take_restart_request():
                    log.info("Restarting %s", name)
                    with contextlib.suppress(ChannelClosedError, ProtocolError):
                        control.send(RestartTest().to_wire())
                    return _Outcome.RESTART
                remaining = timeout - (loop.time() - last_activity)
                try:
                    message = await asyncio.wait_for(
                        status.receive(), max(0.0, min(remaining, POLL_INTERVAL))
                    )
                except TimeoutError:
                    now = loop.time()
                    if liveness is not None and liveness.paused:
                        last_activity = now
                        continue
                    if now - last_activity < timeout:
                        continue
                    if liveness is not None and not liveness.responsive:
                        log.warning("%s stopped responding", self.handle.name)
                    self._finish(
                        name,
                        TestState.ERROR,
                        f"Test timed out after {format_seconds(timeout)} seconds.",
                    )
                    return _Outcome.DONE
                except (ChannelClosedError, ProtocolError) as e:
                    self._finish(name, TestState.ERROR, self._connection_lost(e))
                    return _Outcome.DONE

                last_activity = loop.time()
                if self._handle_message(name, message):
                    await self._drain(name, status)
                    return _Outcome.DONE
        finally:
            status.close()

    def _handle_message(self, name: str, data: object) -> bool:
        """Record one status message; True once the test has completed."""
        aggregator = self.aggregator
        message = parse_test_message(data)
        match message:
            case Running():
                if aggregator.test(self.suite_id, name).state is TestState.PENDING:
                    aggregator.test_started(self.suite_id, name)
                else:
                    log.warning("Test '%s' reported running twice", name)
                return False
            case Print(line=line):
                aggregator.test_printed(self.suite_id, name, line)
                return False
            case Error(message=text, stack_trace=stack_trace):
                aggregator.test_error(
                    self.suite_id, name, _with_trace(text, stack_trace)
                )
                return False
            case Passed():
                self._finish(name, TestState.PASSED)
            case Failed(message=text, stack_trace=stack_trace):
                self._finish(name, TestState.FAILED, _with_trace(text, stack_trace))
            case Skipped(reason=reason):
                self._finish(name, TestState.SKIPPED, reason)
        return True

    async def _drain(self, name: str, status: VirtualChannel) -> None:
        """Record anything a test sends after completing, until it closes."""
        with contextlib.suppress(TimeoutError, ChannelClosedError):
            async with asyncio.timeout(COMPLETION_GRACE):
                async for data in status:
                    log.warning("Test '%s' sent a message after completing", name)
                    self._handle_message(name, data)

    def _finish(self, name: str, state: TestState, message: str | None = None) -> None:
        aggregator = self.aggregator
        if aggregator.test(self.suite_id, name).state is TestState.PENDING:
            aggregator.test_started(self.suite_id, name)
        aggregator.test_finished(self.suite_id, name, state, message)

    def _connection_lost(self, error: BaseException) -> str:
        on_exit = self.handle.on_exit
        if on_exit is not None and on_exit.done() and not on_exit.cancelled():
            if (exit_error := on_exit.exception()) is not None:
                return str(exit_error)
            return (
                f"{self.handle.name} exited with code "
                f"{on_exit.result().exit_code}: {error}"
            )
        if isinstance(error, ProtocolError):
            return f"Protocol error: {error}"
        return f"Connection to {self.handle.name} was lost: {error}"

    def _send_close(self) -> None:
        root = self.handle.multiplexer.root
        if root.closed:
            return
        with contextlib.suppress(ChannelClosedError):
            root.send(SuiteCommand(command="close").to_wire())


def _with_trace(message: str, stack_trace: str | None) -> str:
    return f"{message}\n{stack_trace}" if stack_trace else message
