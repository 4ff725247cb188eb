"""Markers that suites use to configure their tests.

A suite is a Python module whose top-level callables named `test_*` are its
tests, in definition order. Tests may be plain or `async` functions::

    from platform_runner.api import skip, test_on, timeout

    TEST_ON = "vm || browser"

    @test_on("!windows")
    @timeout(5)
    async def test_reads_file():
        ...

    @skip("flaky on CI")
    def test_network():
        ...
"""

from collections.abc import Callable
from typing import Any

from platform_runner.protocol import TestMetadata

METADATA_ATTRIBUTE = "__platform_test_metadata__"

type _Marker = Callable[[Callable[..., Any]], Callable[..., Any]]


class SkipTest(Exception):
    """Raised from a test body to skip the rest of the test."""


def metadata_of(test: Callable[..., Any]) -> TestMetadata:
    """Return the metadata markers attached to `test`."""
    metadata = getattr(test, METADATA_ATTRIBUTE, None)
    return metadata if isinstance(metadata, TestMetadata) else TestMetadata()


def _mark(**update: Any) -> _Marker:
    def decorator(test: Callable[..., Any]) -> Callable[..., Any]:
        setattr(test, METADATA_ATTRIBUTE, metadata_of(test).model_copy(update=update))
        return test

    return decorator


def skip(reason: str | None = None) -> _Marker:
    """Skip the test, optionally recording why."""
    return _mark(skip=True, skip_reason=reason)


def test_on(selector: str) -> _Marker:
    """Only run the test on platforms matching `selector`."""
    return _mark(test_on=selector)


def timeout(seconds: float) -> _Marker:
    """Override the inactivity timeout for the test."""
    return _mark(timeout=seconds)


test_on.__test__ = False  # type: ignore[attr-defined]
