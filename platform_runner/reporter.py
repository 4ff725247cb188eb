"""Progress reporting and result formatting."""

import asyncio
import logging
from collections import Counter
from typing import Any

from platform_runner.aggregator import RunAggregator
from platform_runner.models.result import (
    RunFinished,
    RunSummary,
    SuiteEvent,
    TestEvent,
    TestResult,
    TestState,
)

STATUS_SYMBOLS = {
    TestState.PASSED: "+",
    TestState.SKIPPED: "~",
    TestState.FAILED: "-",
    TestState.ERROR: "!",
}


def describe(result: TestResult) -> str:
    return f"{result.platform} {result.suite_path}: {result.name}"


def indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


class Reporter:
    """Logs compact progress lines as the run advances.

    Each completed test produces one line prefixed with the running counts,
    `+passed ~skipped -failed: <platform> <suite>: <test>`, followed by its
    failure messages. The reporter reads from its own queue, so it never
    slows down the suites feeding the aggregator.
    """

    def __init__(
        self, aggregator: RunAggregator, log: logging.Logger | None = None
    ) -> None:
        self.log = log or logging.getLogger("platform_runner")
        self._queue = aggregator.subscribe()
        self._counted: dict[tuple[str, str, str], TestState] = {}
        self._counts: Counter[TestState] = Counter()
        self._task: asyncio.Task[RunSummary] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    async def wait(self) -> RunSummary:
        """Wait for the run to finish and return its summary."""
        self.start()
        assert self._task is not None
        return await self._task

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    @property
    def prefix(self) -> str:
        failed = self._counts[TestState.FAILED] + self._counts[TestState.ERROR]
        return (
            f"+{self._counts[TestState.PASSED]} "
            f"~{self._counts[TestState.SKIPPED]} -{failed}"
        )

    async def _consume(self) -> RunSummary:
        while True:
            event = await self._queue.get()
            match event:
                case RunFinished(summary=summary):
                    self._finished(summary)
                    return summary
                case TestEvent(kind="state", result=result):
                    self._state_changed(result)
                case TestEvent(kind="print", result=result, text=text):
                    self.log.info("%s: %s", describe(result), text)
                case TestEvent(kind="error", result=result, text=text):
                    self.log.info("%s: %s\n%s", self.prefix, describe(result), text)
                case SuiteEvent(suite_path=path, platform=platform, state=state):
                    self.log.debug("%s %s: %s", platform, path, state)

    def _state_changed(self, result: TestResult) -> None:
        key = (result.platform, result.suite_path, result.name)
        previous = self._counted.pop(key, None)
        if previous is not None:
            # Retried or restarted after completing.
            self._counts[previous] -= 1
        if not result.status.is_terminal:
            return
        self._counted[key] = result.status
        self._counts[result.status] += 1
        self.log.info("%s: %s", self.prefix, describe(result))
        if result.message and result.status is not TestState.PASSED:
            self.log.info("%s", indent(result.message))

    def _finished(self, summary: RunSummary) -> None:
        if summary.total == 0:
            self.log.info("No tests ran.")
        elif summary.success:
            self.log.info("+%d: All tests passed!", summary.passed)
        else:
            self.log.info("%s: Some tests failed.", self.prefix)


def log_results_summary(log: logging.Logger, summary: RunSummary) -> None:
    """Log every test that did not pass, with its messages."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for result in summary.results:
        if result.status is TestState.PASSED:
            continue
        symbol = STATUS_SYMBOLS.get(result.status, "?")
        log.info(
            "%s %s: %s (%.2fs)",
            symbol,
            describe(result),
            result.status,
            result.duration,
        )
        if result.message:
            log.info("  Message: %s", result.message)

    log.info(
        "%d passed, %d failed, %d errors, %d skipped, %d incomplete",
        summary.passed,
        summary.failed,
        summary.errors,
        summary.skipped,
        summary.incomplete,
    )


def format_output(summary: RunSummary) -> dict[str, Any]:
    """Format a run summary for JSON output."""
    return {
        "total": summary.total,
        "passed": summary.passed,
        "failed": summary.failed,
        "errors": summary.errors,
        "skipped": summary.skipped,
        "incomplete": summary.incomplete,
        "load_errors": summary.load_errors,
        "results": [
            {
                "suite": result.suite_path,
                "platform": result.platform,
                "test": result.name,
                "status": str(result.status),
                "duration": result.duration,
                "message": result.message,
            }
            for result in summary.results
        ],
    }
