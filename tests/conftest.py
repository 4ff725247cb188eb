"""Shared fixtures."""

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from aioresponses import aioresponses as aioresponses_cls

type WriteSuiteFn = Callable[..., Path]


@pytest.fixture
def aioresponses() -> Iterator[aioresponses_cls]:
    """Intercept requests made with aiohttp client sessions."""
    with aioresponses_cls() as mock:
        yield mock


@pytest.fixture
def write_suite(tmp_path: Path) -> WriteSuiteFn:
    """Return a function that writes a suite module and returns its path."""

    def _write(source: str, name: str = "example_suite.py") -> Path:
        path = tmp_path / name
        path.write_text(source)
        return path

    return _write
