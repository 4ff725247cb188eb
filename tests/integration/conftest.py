"""Fixtures for integration tests."""

import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from platform_runner.aggregator import RunAggregator
from platform_runner.models.platform import SuitePlatform
from platform_runner.platforms.base import PlatformAdapter
from platform_runner.suite import SuiteController, SuiteOptions

type RunSuiteFn = Callable[..., Awaitable[RunAggregator]]

SUITE = """\
from platform_runner.api import test_on

print("suites may print while loading")


def test_passes():
    print("hello from the platform")


def test_fails():
    raise ValueError("expected failure")


@test_on("browser")
def test_in_browser():
    pass


@test_on("!browser")
def test_outside_browser():
    pass
"""


@pytest.fixture
def suite_path(tmp_path: Path) -> Path:
    """A suite with one test of each outcome."""
    path = tmp_path / "platform_test.py"
    path.write_text(SUITE)
    return path


async def _run_suite(
    adapter: PlatformAdapter,
    path: Path,
    platform: SuitePlatform,
    *,
    aggregator: RunAggregator | None = None,
    options: SuiteOptions | None = None,
) -> RunAggregator:
    """Run one suite on `adapter` and return the aggregated results."""
    aggregator = aggregator or RunAggregator()
    suite_id = aggregator.add_suite(str(path), platform.runtime.identifier)
    handle = await adapter.start(path, platform)
    try:
        await SuiteController(
            suite_id=suite_id,
            path=path,
            platform=platform,
            handle=handle,
            aggregator=aggregator,
            options=options or SuiteOptions(timeout=10, load_timeout=30),
        ).run()
    finally:
        await handle.close()
    return aggregator


@pytest.fixture
def run_suite() -> RunSuiteFn:
    """Return a function that runs one suite on an adapter."""
    return _run_suite


@pytest.fixture
def python_settings() -> dict[str, str]:
    """Executable settings that run this interpreter on every OS."""
    return {
        "linux_executable": sys.executable,
        "mac_os_executable": sys.executable,
        "windows_executable": sys.executable,
    }
