"""Tests for the run aggregator."""

import logging

import pytest

from platform_runner.aggregator import RunAggregator
from platform_runner.errors import ProtocolError
from platform_runner.models.result import (
    RunFinished,
    SuiteEvent,
    SuiteState,
    TestEvent,
    TestState,
)


@pytest.fixture
def aggregator() -> RunAggregator:
    """Create an aggregator with no suites."""
    return RunAggregator()


def load_suite(aggregator: RunAggregator, *names: str) -> int:
    suite_id = aggregator.add_suite("suite_test.py", "vm")
    aggregator.suite_loading(suite_id)
    aggregator.suite_loaded(suite_id, list(names))
    aggregator.suite_running(suite_id)
    return suite_id


class TestTestLifecycle:
    """Tests for per-test state transitions."""

    def test_pass_and_fail(self, aggregator: RunAggregator) -> None:
        """One passing and one failing test give exit code 1."""
        suite_id = load_suite(aggregator, "a", "b")

        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)
        aggregator.test_started(suite_id, "b")
        aggregator.test_finished(suite_id, "b", TestState.FAILED, "expected 1")
        aggregator.suite_done(suite_id)

        summary = aggregator.finish()
        assert summary.passed == 1
        assert summary.failed == 1
        assert summary.total == 2
        assert summary.exit_code == 1
        assert aggregator.test(suite_id, "b").messages == ["expected 1"]

    def test_all_passed_or_skipped_succeeds(self, aggregator: RunAggregator) -> None:
        """Skipped tests do not fail the run."""
        suite_id = load_suite(aggregator, "a", "b")

        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)
        aggregator.test_started(suite_id, "b")
        aggregator.test_finished(suite_id, "b", TestState.SKIPPED, "not today")

        summary = aggregator.finish()
        assert summary.exit_code == 0
        assert summary.skipped == 1
        assert aggregator.test(suite_id, "b").reason == "not today"

    def test_start_twice_is_protocol_error(self, aggregator: RunAggregator) -> None:
        """A test can only start from pending."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")

        with pytest.raises(ProtocolError, match="cannot start"):
            aggregator.test_started(suite_id, "a")

    def test_duplicate_completion_is_ignored(
        self, aggregator: RunAggregator, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A second terminal state is logged and the first one kept."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)

        with caplog.at_level(logging.WARNING):
            accepted = aggregator.test_finished(suite_id, "a", TestState.FAILED)

        assert accepted is False
        assert aggregator.test(suite_id, "a").state is TestState.PASSED
        assert "duplicate completion" in caplog.text

    def test_duplicate_completion_strict(self) -> None:
        """With strict completion a second terminal state is an error."""
        aggregator = RunAggregator(strict_completion=True)
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)

        with pytest.raises(ProtocolError, match="completed twice"):
            aggregator.test_finished(suite_id, "a", TestState.PASSED)

    def test_non_terminal_finish_is_rejected(self, aggregator: RunAggregator) -> None:
        """Only terminal states finish a test."""
        suite_id = load_suite(aggregator, "a")

        with pytest.raises(ValueError, match="not a terminal state"):
            aggregator.test_finished(suite_id, "a", TestState.RUNNING)

    def test_unfinished_tests_count_as_incomplete(
        self, aggregator: RunAggregator
    ) -> None:
        """Pending and running tests fail the run."""
        suite_id = load_suite(aggregator, "a", "b")
        aggregator.test_started(suite_id, "a")

        summary = aggregator.finish()

        assert summary.incomplete == 2
        assert summary.exit_code == 1

    def test_prints_and_errors_are_recorded(self, aggregator: RunAggregator) -> None:
        """Printed lines and errors are kept on the record."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")

        aggregator.test_printed(suite_id, "a", "hello")
        aggregator.test_error(suite_id, "a", "late failure")

        record = aggregator.test(suite_id, "a")
        assert record.prints == ["hello"]
        assert record.messages == ["late failure"]


class TestRetryAndRestart:
    """Tests for running a test again."""

    def test_retry_returns_failed_test_to_pending(
        self, aggregator: RunAggregator
    ) -> None:
        """A failed test can be retried and then pass."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.FAILED, "boom")

        aggregator.retry(suite_id, "a")
        record = aggregator.test(suite_id, "a")
        assert record.state is TestState.PENDING
        assert record.messages == []
        assert record.retries == 1

        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)
        assert aggregator.finish().exit_code == 0

    def test_retry_of_passed_test_is_rejected(
        self, aggregator: RunAggregator
    ) -> None:
        """Only failures can be retried."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)

        with pytest.raises(ProtocolError, match="cannot be retried"):
            aggregator.retry(suite_id, "a")

    def test_restart_clears_running_test(self, aggregator: RunAggregator) -> None:
        """A restarted test goes back to pending without counting a retry."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_printed(suite_id, "a", "partial")

        aggregator.test_restarted(suite_id, "a")

        record = aggregator.test(suite_id, "a")
        assert record.state is TestState.PENDING
        assert record.prints == []
        assert record.retries == 0

    def test_restart_of_finished_test_is_rejected(
        self, aggregator: RunAggregator
    ) -> None:
        """Finished tests cannot be restarted."""
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)

        with pytest.raises(ProtocolError, match="cannot restart"):
            aggregator.test_restarted(suite_id, "a")


class TestSuiteLifecycle:
    """Tests for per-suite state transitions."""

    def test_load_failure_adds_synthetic_test(self, aggregator: RunAggregator) -> None:
        """A suite that fails to load is reported as one errored test."""
        suite_id = aggregator.add_suite("broken_test.py", "vm")
        aggregator.suite_loading(suite_id)

        aggregator.suite_load_failed(suite_id, "SyntaxError")

        suite = aggregator.suite(suite_id)
        assert suite.state is SuiteState.DONE
        assert suite.load_failed
        record = aggregator.test(suite_id, "loading broken_test.py")
        assert record.state is TestState.ERROR
        assert record.messages == ["SyntaxError"]
        summary = aggregator.finish()
        assert summary.load_errors == 1
        assert summary.exit_code == 1

    def test_invalid_transition_is_protocol_error(
        self, aggregator: RunAggregator
    ) -> None:
        """Suites cannot skip loading."""
        suite_id = aggregator.add_suite("suite_test.py", "vm")

        with pytest.raises(ProtocolError, match="cannot move"):
            aggregator.suite_running(suite_id)

    def test_duplicate_test_names_are_rejected(
        self, aggregator: RunAggregator
    ) -> None:
        """A suite cannot declare the same test twice."""
        suite_id = aggregator.add_suite("suite_test.py", "vm")
        aggregator.suite_loading(suite_id)

        with pytest.raises(ProtocolError, match="declared test 'a' twice"):
            aggregator.suite_loaded(suite_id, ["a", "a"])

    def test_failure_of_pending_suite_is_load_failure(
        self, aggregator: RunAggregator
    ) -> None:
        """A suite that fails before loading is recorded as a load failure."""
        suite_id = aggregator.add_suite("suite_test.py", "vm")

        aggregator.suite_failed(suite_id, "Run timed out")

        assert aggregator.suite(suite_id).load_failed

    def test_failure_of_running_suite_adds_error(
        self, aggregator: RunAggregator
    ) -> None:
        """A running suite that fails gets a synthetic errored test."""
        suite_id = load_suite(aggregator, "a")

        aggregator.suite_failed(suite_id, "Protocol error: bad frame")

        record = aggregator.test(suite_id, "suite_test.py (suite)")
        assert record.state is TestState.ERROR
        assert aggregator.suite(suite_id).state is SuiteState.DONE

    def test_failure_of_done_suite_is_ignored(
        self, aggregator: RunAggregator, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Failures after a suite completed are only logged."""
        suite_id = load_suite(aggregator, "a")
        aggregator.suite_done(suite_id)

        with caplog.at_level(logging.WARNING):
            aggregator.suite_failed(suite_id, "late")

        assert "Ignoring failure of finished suite" in caplog.text
        assert len(aggregator.suite(suite_id).tests) == 1


class TestEvents:
    """Tests for subscriber queues."""

    def test_subscriber_receives_events_in_order(
        self, aggregator: RunAggregator
    ) -> None:
        """Every state change is published, ending with RunFinished."""
        queue = aggregator.subscribe()
        suite_id = load_suite(aggregator, "a")
        aggregator.test_started(suite_id, "a")
        aggregator.test_finished(suite_id, "a", TestState.PASSED)
        aggregator.finish()

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())

        suite_states = [e.state for e in events if isinstance(e, SuiteEvent)]
        assert suite_states == [
            SuiteState.PENDING,
            SuiteState.LOADING,
            SuiteState.LOADED,
            SuiteState.RUNNING,
        ]
        test_states = [e.result.status for e in events if isinstance(e, TestEvent)]
        assert test_states == [TestState.RUNNING, TestState.PASSED]
        assert isinstance(events[-1], RunFinished)

    def test_finish_is_idempotent(self, aggregator: RunAggregator) -> None:
        """Finishing twice returns the same summary and publishes once."""
        queue = aggregator.subscribe()

        first = aggregator.finish()
        second = aggregator.finish()

        assert first is second
        assert queue.qsize() == 1
