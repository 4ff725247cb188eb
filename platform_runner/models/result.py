"""Models for test execution state and results."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal


class TestState(StrEnum):
    """Lifecycle of a single test."""

    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (TestState.PENDING, TestState.RUNNING)

    @property
    def is_success(self) -> bool:
        return self in (TestState.PASSED, TestState.SKIPPED)


class SuiteState(StrEnum):
    """Lifecycle of a suite loaded on one platform."""

    PENDING = "pending"
    LOADING = "loading"
    LOADED = "loaded"
    LOAD_ERROR = "load_error"
    RUNNING = "running"
    DONE = "done"


@dataclass(kw_only=True)
class TestRecord:
    """Mutable state of one test, owned by the run aggregator."""

    __test__ = False

    suite_id: int
    suite_path: str
    platform: str
    name: str
    state: TestState = TestState.PENDING
    messages: list[str] = field(default_factory=list)
    prints: list[str] = field(default_factory=list)
    reason: str | None = None
    retries: int = 0
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def snapshot(self) -> "TestResult":
        return TestResult(
            suite_path=self.suite_path,
            platform=self.platform,
            name=self.name,
            status=self.state,
            duration=self.duration,
            message="\n".join(self.messages) or self.reason,
        )


@dataclass(frozen=True, kw_only=True)
class TestResult:
    """Result of a single test execution."""

    __test__ = False

    suite_path: str
    platform: str
    name: str
    status: TestState
    duration: float
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class RunSummary:
    """Final counts of a run."""

    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    incomplete: int = 0
    load_errors: int = 0
    results: Sequence[TestResult] = ()

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.errors + self.skipped + self.incomplete

    @property
    def success(self) -> bool:
        return (
            self.failed == 0
            and self.errors == 0
            and self.incomplete == 0
            and self.load_errors == 0
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


@dataclass(frozen=True, kw_only=True)
class SuiteEvent:
    """A suite changed state."""

    suite_id: int
    suite_path: str
    platform: str
    state: SuiteState
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class TestEvent:
    """A test changed state, printed a line, or reported an error."""

    __test__ = False

    kind: Literal["state", "print", "error"]
    result: TestResult
    text: str | None = None


@dataclass(frozen=True, kw_only=True)
class RunFinished:
    """The run is over and no further events will follow."""

    summary: RunSummary


type RunEvent = SuiteEvent | TestEvent | RunFinished
