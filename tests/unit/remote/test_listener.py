"""Tests for the platform side of the suite protocol."""

import asyncio
import io
import sys
import types
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from platform_runner.models.platform import OperatingSystem, SuitePlatform
from platform_runner.models.runtime import CHROME, VM
from platform_runner.multiplex.multiplexer import Multiplexer
from platform_runner.multiplex.transport import memory_transport_pair
from platform_runner.protocol import RestartTest
from platform_runner.remote.listener import (
    RemoteListener,
    collect_tests,
    load_suite_module,
)
from platform_runner.testing.payloads import load_request

WriteSuite = Callable[..., Path]

SUITE = """\
import asyncio

from platform_runner.api import SkipTest, skip, test_on, timeout


def test_passes():
    print("hello")


async def test_fails():
    await asyncio.sleep(0)
    raise ValueError("expected 1, got 2")


@skip("not ready")
def test_skipped():
    raise AssertionError("never runs")


@test_on("browser")
def test_browser_only():
    pass


def test_skips_itself():
    raise SkipTest("nothing to do")


@timeout(2)
async def test_slow():
    await asyncio.sleep(60)


def helper():
    pass
"""


@pytest.fixture
async def runner() -> AsyncIterator[Multiplexer]:
    """Start a listener and return the runner's end of its connection."""
    runner_side, platform_side = memory_transport_pair()
    runner = Multiplexer(runner_side)
    task = asyncio.create_task(RemoteListener(Multiplexer(platform_side)).run())
    yield runner
    await runner.close()
    await asyncio.wait_for(task, 5)


async def load(runner: Multiplexer, path: Path) -> dict[str, Any]:
    runner.root.send(load_request(path=str(path)))
    reply: dict[str, Any] = await runner.root.receive()
    return reply


async def run_test(runner: Multiplexer, reply: dict[str, Any], name: str) -> list[Any]:
    """Run one test and return every message sent on its status channel."""
    (info,) = [t for t in reply["tests"] if t["name"] == name]
    control = runner.root.virtual_channel(info["channel"])
    status = control.virtual_channel()
    control.send({"command": "run", "channel": status.id})
    return [message async for message in status]


class TestLoading:
    """Tests for answering load requests."""

    async def test_lists_tests_in_order(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Top-level test_ functions are reported in definition order."""
        reply = await load(runner, write_suite(SUITE))

        assert reply["type"] == "loaded"
        assert [t["name"] for t in reply["tests"]] == [
            "test_passes",
            "test_fails",
            "test_skipped",
            "test_browser_only",
            "test_skips_itself",
            "test_slow",
        ]
        channels = [t["channel"] for t in reply["tests"]]
        assert len(set(channels)) == len(channels)

    async def test_reports_metadata(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Markers are sent along with the tests."""
        reply = await load(runner, write_suite(SUITE))
        metadata = {t["name"]: t["metadata"] for t in reply["tests"]}

        assert metadata["test_skipped"] == {"skip": True, "skipReason": "not ready"}
        assert metadata["test_browser_only"] == {"skip": False, "testOn": "browser"}
        assert metadata["test_slow"] == {"skip": False, "timeout": 2.0}

    async def test_syntax_error_is_load_error(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """A suite that does not compile fails to load."""
        path = write_suite("def test_broken(:\n    pass\n")

        reply = await load(runner, path)

        assert reply["type"] == "loadError"
        assert reply["message"].startswith(f"Failed to load {path}")
        assert "SyntaxError" in reply["stackTrace"]

    async def test_missing_file_is_load_error(
        self, runner: Multiplexer, tmp_path: Path
    ) -> None:
        """A suite that does not exist fails to load."""
        reply = await load(runner, tmp_path / "missing_test.py")

        assert reply["type"] == "loadError"
        assert "missing_test.py" in reply["message"]

    async def test_unknown_platform_is_load_error(self, runner: Multiplexer) -> None:
        """The platform descriptor must be valid."""
        runner.root.send(
            load_request(
                platform={"runtime": "netscape", "compiler": "dart2js"},
                source="def test_a(): pass\n",
            )
        )

        reply = await runner.root.receive()

        assert reply["type"] == "loadError"
        assert "netscape" in reply["message"]

    async def test_loads_source_from_request(self, runner: Multiplexer) -> None:
        """The suite may be sent inline instead of by path."""
        runner.root.send(
            load_request(path=None, source="def test_inline():\n    pass\n")
        )

        reply = await runner.root.receive()

        assert [t["name"] for t in reply["tests"]] == ["test_inline"]

    async def test_malformed_request_is_load_error(self, runner: Multiplexer) -> None:
        """A first message that is not a load request is answered with an error."""
        runner.root.send({"type": "hello"})

        reply = await runner.root.receive()

        assert reply["type"] == "loadError"
        assert "Invalid load request" in reply["message"]


class TestRunning:
    """Tests for running tests."""

    async def test_passing_test_reports_prints(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """A passing test reports running, its output, then passed."""
        reply = await load(runner, write_suite(SUITE))

        messages = await run_test(runner, reply, "test_passes")

        assert messages == [
            {"type": "running"},
            {"type": "print", "line": "hello"},
            {"type": "passed"},
        ]

    async def test_prints_captured_after_stdout_is_replaced(
        self,
        runner: Multiplexer,
        write_suite: WriteSuite,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Output is still routed when sys.stdout changes after the listener starts."""
        reply = await load(runner, write_suite(SUITE))
        replacement = io.StringIO()
        monkeypatch.setattr(sys, "stdout", replacement)

        messages = await run_test(runner, reply, "test_passes")

        assert {"type": "print", "line": "hello"} in messages
        assert replacement.getvalue() == ""

    async def test_failing_test_reports_failure(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """An exception fails the test with its message and stack trace."""
        reply = await load(runner, write_suite(SUITE))

        messages = await run_test(runner, reply, "test_fails")

        assert messages[0] == {"type": "running"}
        assert messages[-1]["type"] == "failed"
        assert messages[-1]["message"] == "expected 1, got 2"
        assert "ValueError" in messages[-1]["stackTrace"]

    async def test_skip_marker(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Skipped tests report their reason without running."""
        reply = await load(runner, write_suite(SUITE))

        messages = await run_test(runner, reply, "test_skipped")

        assert messages == [
            {"type": "running"},
            {"type": "skipped", "reason": "not ready"},
        ]

    async def test_test_on_mismatch_skips(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Tests for other platforms are skipped."""
        reply = await load(runner, write_suite(SUITE))

        messages = await run_test(runner, reply, "test_browser_only")

        assert messages[-1] == {"type": "skipped", "reason": "Not supported on VM"}

    async def test_skip_test_exception(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Raising SkipTest skips the rest of the test."""
        reply = await load(runner, write_suite(SUITE))

        messages = await run_test(runner, reply, "test_skips_itself")

        assert messages[-1] == {"type": "skipped", "reason": "nothing to do"}

    async def test_closing_status_cancels_test(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """Closing the status channel stops the test without more reports."""
        reply = await load(runner, write_suite(SUITE))
        (info,) = [t for t in reply["tests"] if t["name"] == "test_slow"]
        control = runner.root.virtual_channel(info["channel"])
        status = control.virtual_channel()
        control.send({"command": "run", "channel": status.id})
        assert await status.receive() == {"type": "running"}

        status.close()
        rerun = control.virtual_channel()
        control.send({"command": "run", "channel": rerun.id})

        assert await asyncio.wait_for(rerun.receive(), 1) == {"type": "running"}
        rerun.close()

    async def test_restart_command_abandons_current_run(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """restartCurrent cancels the running invocation and closes its channel."""
        reply = await load(runner, write_suite(SUITE))
        (info,) = [t for t in reply["tests"] if t["name"] == "test_slow"]
        control = runner.root.virtual_channel(info["channel"])
        status = control.virtual_channel()
        control.send({"command": "run", "channel": status.id})
        assert await status.receive() == {"type": "running"}

        control.send(RestartTest().to_wire())

        async with asyncio.timeout(5):
            assert [message async for message in status] == []

    async def test_runs_a_test_again(
        self, runner: Multiplexer, write_suite: WriteSuite
    ) -> None:
        """A test can be run more than once, each time on a new channel."""
        reply = await load(runner, write_suite(SUITE))
        (info,) = [t for t in reply["tests"] if t["name"] == "test_passes"]
        control = runner.root.virtual_channel(info["channel"])

        for _ in range(2):
            status = control.virtual_channel()
            control.send({"command": "run", "channel": status.id})
            messages = [message async for message in status]
            assert messages[-1] == {"type": "passed"}

    async def test_close_command_stops_listener(self, write_suite: WriteSuite) -> None:
        """The listener returns once the runner closes the suite."""
        runner_side, platform_side = memory_transport_pair()
        runner = Multiplexer(runner_side)
        task = asyncio.create_task(RemoteListener(Multiplexer(platform_side)).run())
        await load(runner, write_suite(SUITE))

        runner.root.send({"command": "close"})

        await asyncio.wait_for(task, 5)
        await runner.close()


class TestCollectTests:
    """Tests for finding tests in a suite module."""

    def module(self, source: str) -> types.ModuleType:
        return load_suite_module("suite_test.py", source)

    def test_ignores_imported_and_non_test_callables(self) -> None:
        """Only test_ functions defined in the suite are tests."""
        module = self.module(
            "from os.path import join as test_join\n"
            "test_value = 3\n"
            "def helper(): pass\n"
            "def test_real(): pass\n"
        )

        tests = collect_tests(module, SuitePlatform.create(VM))

        assert [t.name for t in tests] == ["test_real"]

    def test_suite_selector_skips_every_test(self) -> None:
        """A suite-level TEST_ON that does not match skips all tests."""
        module = self.module('TEST_ON = "vm"\ndef test_a(): pass\n')

        (test,) = collect_tests(module, SuitePlatform.create(CHROME))

        assert test.metadata.skip
        assert test.metadata.skip_reason == "Suite is not supported on Chrome"

    def test_matching_suite_selector_keeps_tests(self) -> None:
        """A matching TEST_ON leaves tests alone."""
        module = self.module('TEST_ON = "posix"\ndef test_a(): pass\n')
        platform = SuitePlatform.create(VM, os=OperatingSystem.LINUX)

        (test,) = collect_tests(module, platform)

        assert not test.metadata.skip

    def test_invalid_selector_is_rejected(self) -> None:
        """Invalid test_on selectors fail loading."""
        module = self.module(
            "from platform_runner.api import test_on\n"
            "@test_on('vm ||')\n"
            "def test_a(): pass\n"
        )

        with pytest.raises(ValueError):
            collect_tests(module, SuitePlatform.create(VM))
