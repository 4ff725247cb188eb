"""The platform side of the suite protocol.

A `RemoteListener` runs inside the platform (a child process, or a sandbox in
a browser host). It answers the runner's load request with the suite's
tests, then runs each test when asked, reporting on the status channel the
runner announced for that run.
"""

import asyncio
import contextvars
import inspect
import io
import itertools
import logging
import sys
import threading
import traceback
import types
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from platform_runner.api import SkipTest, metadata_of
from platform_runner.errors import ChannelClosedError, ProtocolError
from platform_runner.models.base import WireModel
from platform_runner.models.platform import SuitePlatform
from platform_runner.multiplex.multiplexer import Multiplexer, VirtualChannel
from platform_runner.protocol import (
    Failed,
    LoadRequest,
    Passed,
    Print,
    Running,
    Skipped,
    SuiteLoaded,
    SuiteLoadError,
    TestInfo,
    TestMetadata,
    parse_load_request,
)
from platform_runner.selector import PlatformSelector

log = logging.getLogger(__name__)

SUITE_SELECTOR_NAME = "TEST_ON"

type SourceLoader = Callable[[LoadRequest], Awaitable[str]]

_module_ids = itertools.count(1)
_print_sink: contextvars.ContextVar[Callable[[str], None] | None] = (
    contextvars.ContextVar("print_sink", default=None)
)


class _PrintRouter(io.TextIOBase):
    """Sends `print` output of a running test to that test's status channel.

    Output written outside a test goes to the stream this router replaced.
    """

    def __init__(self, fallback: TextIO) -> None:
        self.fallback = fallback

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        sink = _print_sink.get()
        if sink is None:
            return self.fallback.write(text)
        sink(text)
        return len(text)

    def flush(self) -> None:
        self.fallback.flush()


def install_print_router() -> None:
    """Route `print` calls made by tests to their status channels."""
    if not isinstance(sys.stdout, _PrintRouter):
        sys.stdout = _PrintRouter(sys.stdout)


@dataclass(frozen=True, kw_only=True)
class SuiteTest:
    """A test found in a loaded suite module."""

    __test__ = False

    name: str
    body: Callable[..., Any]
    metadata: TestMetadata


def load_suite_module(path: str, source: str) -> types.ModuleType:
    """Execute suite `source` as a fresh module named after `path`."""
    module = types.ModuleType(f"_platform_suite_{next(_module_ids)}")
    module.__file__ = path
    code = compile(source, path, "exec")
    exec(code, module.__dict__)
    return module


def collect_tests(
    module: types.ModuleType, platform: SuitePlatform
) -> Sequence[SuiteTest]:
    """Find the suite's tests in definition order.

    Raises:
        ValueError: If a platform selector in the suite is invalid

    """
    suite_selector = getattr(module, SUITE_SELECTOR_NAME, None)
    suite_skip_reason: str | None = None
    if suite_selector is not None:
        if not PlatformSelector.parse(str(suite_selector)).evaluate(platform):
            suite_skip_reason = f"Suite is not supported on {platform.runtime.name}"

    tests = []
    for name, value in vars(module).items():
        if not name.startswith("test_") or not callable(value):
            continue
        if getattr(value, "__module__", None) != module.__name__:
            continue
        metadata = metadata_of(value)
        if metadata.test_on is not None:
            PlatformSelector.parse(metadata.test_on)
        if suite_skip_reason is not None:
            metadata = metadata.model_copy(
                update={"skip": True, "skip_reason": suite_skip_reason}
            )
        tests.append(SuiteTest(name=name, body=value, metadata=metadata))
    return tests


class RemoteListener:
    """Serves one suite over a multiplexer until the runner closes it."""

    def __init__(
        self,
        multiplexer: Multiplexer,
        *,
        default_path: str | None = None,
        source_loader: SourceLoader | None = None,
    ) -> None:
        self.multiplexer = multiplexer
        self.default_path = default_path
        self.source_loader = source_loader or self._read_source
        self._platform: SuitePlatform | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        """Load the suite, serve its tests, and return once the suite closes."""
        root = self.multiplexer.root
        try:
            request = parse_load_request(await root.receive())
        except ChannelClosedError:
            log.debug("Suite channel closed before a load request")
            await self._shutdown()
            return
        except ProtocolError as e:
            root.send(SuiteLoadError(message=str(e)).to_wire())
            await self._shutdown()
            return

        try:
            tests = await self._load(request)
        except Exception as e:
            log.debug("Suite %s failed to load", request.path, exc_info=True)
            root.send(
                SuiteLoadError(
                    message=f"Failed to load {request.path}: {e}",
                    stack_trace=traceback.format_exc(),
                ).to_wire()
            )
            await self._shutdown()
            return

        infos = []
        for test in tests:
            control = root.virtual_channel()
            infos.append(
                TestInfo(name=test.name, channel=control.id, metadata=test.metadata)
            )
            self._spawn(self._serve_test(control, test))
        root.send(SuiteLoaded(tests=infos).to_wire())

        try:
            async for message in root:
                command = message.get("command") if isinstance(message, dict) else None
                if command in ("close", "closeSuite"):
                    break
                log.warning("Ignoring unknown suite command %r", message)
        except ChannelClosedError:
            log.debug("Suite channel closed by the runner")
        finally:
            await self._shutdown()

    async def _load(self, request: LoadRequest) -> Sequence[SuiteTest]:
        self._platform = SuitePlatform.deserialize(request.platform)
        source = await self.source_loader(request)
        path = request.path or self.default_path or "<suite>"
        module = load_suite_module(path, source)
        return collect_tests(module, self._platform)

    async def _read_source(self, request: LoadRequest) -> str:
        if request.source is not None:
            return request.source
        path = request.path or self.default_path
        if path is None:
            raise ValueError("Load request has neither a path nor a source")
        return await asyncio.to_thread(Path(path).read_text)

    def _spawn(self, coroutine: Any) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve_test(self, control: VirtualChannel, test: SuiteTest) -> None:
        current: asyncio.Task[None] | None = None
        try:
            async for message in control:
                command = message.get("command") if isinstance(message, dict) else None
                match command:
                    case "run":
                        if current is not None and not current.done():
                            current.cancel()
                            await asyncio.gather(current, return_exceptions=True)
                        channel_id = message.get("channel")
                        if not isinstance(channel_id, int):
                            log.warning("Ignoring run without a channel: %r", message)
                            continue
                        try:
                            status = control.virtual_channel(channel_id)
                        except ValueError as e:
                            log.warning("Ignoring run of %s: %s", test.name, e)
                            continue
                        current = asyncio.create_task(self._run_test(status, test))
                    case "restartCurrent":
                        if current is not None:
                            current.cancel()
                    case "close" | "closeSuite":
                        break
                    case _:
                        log.warning("Ignoring unknown test command %r", message)
        except ChannelClosedError:
            pass
        finally:
            if current is not None and not current.done():
                current.cancel()
                await asyncio.gather(current, return_exceptions=True)

    async def _run_test(self, status: VirtualChannel, test: SuiteTest) -> None:
        """Run one invocation of `test`, reporting on `status`.

        If the runner closes `status` first the test body is cancelled and
        nothing more is reported.
        """
        assert self._platform is not None
        body = asyncio.create_task(self._invoke(status, test, self._platform))
        closed = asyncio.create_task(_wait_closed(status))
        try:
            await asyncio.wait([body, closed], return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not body.done():
                log.debug("Status channel of %s closed, cancelling it", test.name)
                body.cancel()
            await asyncio.gather(body, closed, return_exceptions=True)
            status.close()

    async def _invoke(
        self, status: VirtualChannel, test: SuiteTest, platform: SuitePlatform
    ) -> None:
        report = _Reporter(status)
        report.send(Running())

        if test.metadata.skip:
            report.send(Skipped(reason=test.metadata.skip_reason))
            return
        if test.metadata.test_on is not None:
            if not PlatformSelector.parse(test.metadata.test_on).evaluate(platform):
                report.send(Skipped(reason=f"Not supported on {platform.runtime.name}"))
                return

        # sys.stdout may have been replaced since the last test ran.
        install_print_router()
        token = _print_sink.set(_thread_safe(report.write))
        try:
            await _call(test.body)
        except asyncio.CancelledError:
            raise
        except SkipTest as e:
            report.flush()
            report.send(Skipped(reason=str(e) or None))
        except Exception as e:
            report.flush()
            report.send(
                Failed(
                    message=str(e) or type(e).__name__,
                    stack_trace=traceback.format_exc(),
                )
            )
        else:
            report.flush()
            report.send(Passed())
        finally:
            _print_sink.reset(token)

    async def _shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self.multiplexer.root.close()
        await self.multiplexer.close()


class _Reporter:
    """Writes messages for one test run, dropping them once the run is closed."""

    def __init__(self, status: VirtualChannel) -> None:
        self._status = status
        self._buffer = ""

    def send(self, message: WireModel) -> None:
        if self._status.closed:
            return
        self._status.send(message.to_wire())

    def write(self, text: str) -> None:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self.send(Print(line=line))

    def flush(self) -> None:
        if self._buffer:
            self.send(Print(line=self._buffer))
            self._buffer = ""


async def _call(body: Callable[..., Any]) -> None:
    if inspect.iscoroutinefunction(body):
        await body()
        return
    result = await asyncio.to_thread(body)
    if inspect.isawaitable(result):
        await result


async def _wait_closed(channel: VirtualChannel) -> None:
    try:
        while True:
            message = await channel.receive()
            log.debug("Ignoring message on status channel: %r", message)
    except ChannelClosedError:
        return


def _thread_safe(write: Callable[[str], None]) -> Callable[[str], None]:
    """Wrap `write` so sync tests running in a worker thread can print."""
    loop = asyncio.get_running_loop()
    loop_thread = threading.get_ident()

    def sink(text: str) -> None:
        if threading.get_ident() == loop_thread:
            write(text)
        else:
            loop.call_soon_threadsafe(write, text)

    return sink
