"""Integration tests running suites in child interpreters."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from platform_runner.aggregator import RunAggregator
from platform_runner.errors import ApplicationException
from platform_runner.models.platform import SuitePlatform
from platform_runner.models.result import TestState
from platform_runner.models.runtime import VM
from platform_runner.platforms.vm import VmAdapter, VmConfig

type RunSuiteFn = Callable[..., Awaitable[RunAggregator]]

PLATFORM = SuitePlatform.create(VM)


async def test_runs_suite_in_child_process(
    suite_path: Path, run_suite: RunSuiteFn
) -> None:
    """Every test reports its outcome from the child process."""
    async with VmAdapter.from_config(VM, VmConfig(grace_period=1)) as adapter:
        aggregator = await run_suite(adapter, suite_path, PLATFORM)

    states = {record.name: record.state for record in aggregator.tests}
    assert states == {
        "test_passes": TestState.PASSED,
        "test_fails": TestState.FAILED,
        "test_in_browser": TestState.SKIPPED,
        "test_outside_browser": TestState.PASSED,
    }
    assert aggregator.test(1, "test_passes").prints == ["hello from the platform"]


async def test_runs_suites_concurrently(tmp_path: Path, run_suite: RunSuiteFn) -> None:
    """Each suite gets its own process."""
    paths = []
    for i in range(3):
        path = tmp_path / f"suite{i}_test.py"
        path.write_text(f"def test_{i}():\n    pass\n")
        paths.append(path)

    async with VmAdapter.from_config(VM, VmConfig(grace_period=1)) as adapter:
        aggregators = await asyncio.gather(
            *(run_suite(adapter, path, PLATFORM) for path in paths)
        )

    assert [a.summary().passed for a in aggregators] == [1, 1, 1]


async def test_missing_executable(suite_path: Path) -> None:
    """A missing interpreter fails with the reason it could not start."""
    config = VmConfig().with_executable("/nonexistent/python")

    async with VmAdapter.from_config(VM, config) as adapter:
        with pytest.raises(
            ApplicationException, match="Failed to run VM: No such file or directory"
        ):
            await adapter.start(suite_path, PLATFORM)


async def test_close_right_after_start(suite_path: Path) -> None:
    """Closing a suite that never loaded stops its process."""
    async with VmAdapter.from_config(VM, VmConfig(grace_period=1)) as adapter:
        handle = await adapter.start(suite_path, PLATFORM)

        await handle.close()

        assert handle.on_exit is not None
        await asyncio.wait_for(handle.on_exit, 5)


async def test_process_exit_errors_running_test(
    tmp_path: Path, run_suite: RunSuiteFn
) -> None:
    """A process that dies while a test runs errors that test."""
    path = tmp_path / "exit_test.py"
    path.write_text("import os\n\n\ndef test_exits():\n    os._exit(3)\n")

    async with VmAdapter.from_config(VM, VmConfig(grace_period=1)) as adapter:
        aggregator = await run_suite(adapter, path, PLATFORM)

    record = aggregator.test(1, "test_exits")
    assert record.state is TestState.ERROR
    assert aggregator.exit_code() == 1
