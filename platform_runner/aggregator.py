"""Aggregation of suite and test lifecycle events into one run state."""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from platform_runner.errors import ProtocolError
from platform_runner.models.result import (
    RunEvent,
    RunFinished,
    RunSummary,
    SuiteEvent,
    SuiteState,
    TestEvent,
    TestRecord,
    TestState,
)

log = logging.getLogger(__name__)

SUITE_TRANSITIONS: Mapping[SuiteState, frozenset[SuiteState]] = {
    SuiteState.PENDING: frozenset([SuiteState.LOADING, SuiteState.LOAD_ERROR]),
    SuiteState.LOADING: frozenset([SuiteState.LOADED, SuiteState.LOAD_ERROR]),
    SuiteState.LOADED: frozenset([SuiteState.RUNNING, SuiteState.DONE]),
    SuiteState.LOAD_ERROR: frozenset([SuiteState.DONE]),
    SuiteState.RUNNING: frozenset([SuiteState.DONE]),
    SuiteState.DONE: frozenset(),
}


@dataclass(kw_only=True)
class SuiteRecord:
    """State of one suite on one platform."""

    id: int
    path: str
    platform: str
    state: SuiteState = SuiteState.PENDING
    tests: list[TestRecord] = field(default_factory=list)
    message: str | None = None
    load_failed: bool = False


class RunAggregator:
    """Folds events from every suite and test into a single run state.

    All mutation happens on the event loop thread, one call at a time, so
    concurrent suites never race on a record. Subscribers receive events on
    unbounded queues: a slow consumer never blocks the producers.

    A test moves from pending to running and then to exactly one terminal
    state. A second terminal state for the same test is logged and ignored,
    or raises `ProtocolError` with `strict_completion`.
    """

    def __init__(self, *, strict_completion: bool = False) -> None:
        self.strict_completion = strict_completion
        self._suites: dict[int, SuiteRecord] = {}
        self._tests: dict[tuple[int, str], TestRecord] = {}
        self._subscribers: list[asyncio.Queue[RunEvent]] = []
        self._next_suite_id = 1
        self._summary: RunSummary | None = None

    @property
    def finished(self) -> bool:
        return self._summary is not None

    @property
    def suites(self) -> Sequence[SuiteRecord]:
        return tuple(self._suites.values())

    @property
    def tests(self) -> Sequence[TestRecord]:
        return tuple(self._tests.values())

    def subscribe(self) -> asyncio.Queue[RunEvent]:
        """Return a queue that receives every event from now on."""
        queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def suite(self, suite_id: int) -> SuiteRecord:
        return self._suites[suite_id]

    def test(self, suite_id: int, name: str) -> TestRecord:
        return self._tests[(suite_id, name)]

    def add_suite(self, path: str, platform: str) -> int:
        """Register a suite scheduled on a platform and return its id."""
        suite_id = self._next_suite_id
        self._next_suite_id += 1
        self._suites[suite_id] = SuiteRecord(id=suite_id, path=path, platform=platform)
        self._publish_suite(self._suites[suite_id])
        return suite_id

    def suite_loading(self, suite_id: int) -> None:
        self._move_suite(suite_id, SuiteState.LOADING)

    def suite_loaded(self, suite_id: int, test_names: Sequence[str]) -> None:
        """Record the tests a suite declared; they start out pending."""
        suite = self._suites[suite_id]
        self._move_suite(suite_id, SuiteState.LOADED)
        for name in test_names:
            self._add_test(suite, name)

    def suite_load_failed(self, suite_id: int, message: str) -> None:
        """Record a load failure as one synthetic failing test."""
        suite = self._suites[suite_id]
        self._move_suite(suite_id, SuiteState.LOAD_ERROR, message)
        suite.load_failed = True
        record = self._add_test(suite, f"loading {suite.path}")
        self._terminate(record, TestState.ERROR, message)
        self._move_suite(suite_id, SuiteState.DONE)

    def suite_running(self, suite_id: int) -> None:
        self._move_suite(suite_id, SuiteState.RUNNING)

    def suite_failed(self, suite_id: int, message: str) -> None:
        """Record a failure of a suite that had already loaded."""
        suite = self._suites[suite_id]
        if suite.state in (SuiteState.PENDING, SuiteState.LOADING):
            self.suite_load_failed(suite_id, message)
            return
        if suite.state is SuiteState.DONE or self.finished:
            log.warning(
                "Ignoring failure of finished suite %s: %s", suite.path, message
            )
            return
        record = self._add_test(suite, f"{suite.path} (suite)")
        self._terminate(record, TestState.ERROR, message)
        self._move_suite(suite_id, SuiteState.DONE)

    def suite_done(self, suite_id: int) -> None:
        if self._suites[suite_id].state is SuiteState.DONE:
            return
        self._move_suite(suite_id, SuiteState.DONE)

    def test_started(self, suite_id: int, name: str) -> None:
        record = self._tests[(suite_id, name)]
        if record.state is not TestState.PENDING:
            raise ProtocolError(
                f"Test '{name}' cannot start from state {record.state}"
            )
        record.state = TestState.RUNNING
        record.started_at = time.monotonic()
        self._publish_test("state", record)

    def test_printed(self, suite_id: int, name: str, line: str) -> None:
        record = self._tests[(suite_id, name)]
        record.prints.append(line)
        self._publish_test("print", record, line)

    def test_error(self, suite_id: int, name: str, message: str) -> None:
        """Record an error reported while the test was running."""
        record = self._tests[(suite_id, name)]
        if record.state.is_terminal:
            log.warning(
                "Test '%s' reported an error after it completed: %s", name, message
            )
        record.messages.append(message)
        self._publish_test("error", record, message)

    def test_finished(
        self,
        suite_id: int,
        name: str,
        state: TestState,
        message: str | None = None,
    ) -> bool:
        """Move a test to a terminal state.

        Returns:
            False if the test had already completed and the call was ignored

        Raises:
            ProtocolError: On a duplicate completion with `strict_completion`

        """
        if not state.is_terminal:
            raise ValueError(f"{state} is not a terminal state")
        record = self._tests[(suite_id, name)]
        if record.state.is_terminal:
            if self.strict_completion:
                raise ProtocolError(
                    f"Test '{name}' completed twice ({record.state}, then {state})"
                )
            log.warning(
                "Ignoring duplicate completion of test '%s': already %s, got %s",
                name,
                record.state,
                state,
            )
            return False
        self._terminate(record, state, message)
        return True

    def retry(self, suite_id: int, name: str) -> None:
        """Return a failed test to pending so it can run again."""
        record = self._tests[(suite_id, name)]
        if record.state not in (TestState.FAILED, TestState.ERROR):
            raise ProtocolError(f"Test '{name}' cannot be retried from {record.state}")
        log.info("Retrying test '%s' (attempt %d)", name, record.retries + 2)
        record.retries += 1
        record.state = TestState.PENDING
        record.messages.clear()
        record.reason = None
        record.started_at = None
        record.finished_at = None
        self._publish_test("state", record)

    def test_restarted(self, suite_id: int, name: str) -> None:
        """Return a test that is being run to pending, at the user's request."""
        record = self._tests[(suite_id, name)]
        if record.state.is_terminal:
            raise ProtocolError(f"Test '{name}' cannot restart from {record.state}")
        record.state = TestState.PENDING
        record.messages.clear()
        record.prints.clear()
        record.started_at = None
        self._publish_test("state", record)

    def summary(self) -> RunSummary:
        """Counts over every test recorded so far."""
        if self._summary is not None:
            return self._summary
        counts = {state: 0 for state in TestState}
        for record in self._tests.values():
            counts[record.state] += 1
        return RunSummary(
            passed=counts[TestState.PASSED],
            failed=counts[TestState.FAILED],
            errors=counts[TestState.ERROR],
            skipped=counts[TestState.SKIPPED],
            incomplete=counts[TestState.PENDING] + counts[TestState.RUNNING],
            load_errors=sum(1 for s in self._suites.values() if s.load_failed),
            results=[record.snapshot() for record in self._tests.values()],
        )

    def exit_code(self) -> int:
        return self.summary().exit_code

    def finish(self) -> RunSummary:
        """Freeze the run state and notify subscribers; idempotent."""
        if self._summary is None:
            summary = self.summary()
            self._publish(RunFinished(summary=summary))
            self._summary = summary
        return self._summary

    def _add_test(self, suite: SuiteRecord, name: str) -> TestRecord:
        key = (suite.id, name)
        if key in self._tests:
            raise ProtocolError(f"Suite {suite.path} declared test '{name}' twice")
        record = TestRecord(
            suite_id=suite.id, suite_path=suite.path, platform=suite.platform, name=name
        )
        self._tests[key] = record
        suite.tests.append(record)
        return record

    def _terminate(
        self, record: TestRecord, state: TestState, message: str | None
    ) -> None:
        now = time.monotonic()
        if record.started_at is None:
            record.started_at = now
        record.finished_at = now
        record.state = state
        if message is not None:
            if state is TestState.SKIPPED:
                record.reason = message
            else:
                record.messages.append(message)
        self._publish_test("state", record)

    def _move_suite(
        self, suite_id: int, state: SuiteState, message: str | None = None
    ) -> None:
        suite = self._suites[suite_id]
        if state not in SUITE_TRANSITIONS[suite.state]:
            raise ProtocolError(
                f"Suite {suite.path} cannot move from {suite.state} to {state}"
            )
        suite.state = state
        if message is not None:
            suite.message = message
        self._publish_suite(suite)

    def _publish_suite(self, suite: SuiteRecord) -> None:
        self._publish(
            SuiteEvent(
                suite_id=suite.id,
                suite_path=suite.path,
                platform=suite.platform,
                state=suite.state,
                message=suite.message,
            )
        )

    def _publish_test(
        self,
        kind: Literal["state", "print", "error"],
        record: TestRecord,
        text: str | None = None,
    ) -> None:
        self._publish(TestEvent(kind=kind, result=record.snapshot(), text=text))

    def _publish(self, event: RunEvent) -> None:
        if self.finished:
            log.debug("Dropping event after run finished: %r", event)
            return
        for queue in self._subscribers:
            queue.put_nowait(event)
