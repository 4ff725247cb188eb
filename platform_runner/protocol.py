"""Messages exchanged between the runner and a platform.

Three conversations share each connection:

* the host conversation on a browser connection's root channel
  (`HostCommand`), used to load and close suites and to pause for debugging;
* the suite conversation on a suite's root channel (`LoadRequest`, then
  `SuiteLoaded` or `SuiteLoadError`, then `SuiteCommand`);
* one test conversation per run of a test: the runner sends `RunTest` on the
  test's control channel announcing a fresh status channel, and the platform
  reports on it with `TestMessage`s ending in exactly one terminal message.
"""

from collections.abc import Sequence
from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, ValidationError

from platform_runner.errors import ProtocolError
from platform_runner.models.base import WireModel

HOST_COMMANDS = frozenset(
    ["loadSuite", "displayPause", "resume", "closeSuite", "ping", "restart"]
)


class HostCommand(WireModel):
    """Command on a browser host's root channel, in either direction."""

    command: str
    channel: int | None = None
    id: int | None = None
    url: str | None = None


class LoadRequest(WireModel):
    """First message on a suite channel: which suite to load, and where."""

    type: Literal["load"] = "load"
    platform: Any
    path: str | None = None
    source: str | None = None


class TestMetadata(WireModel):
    """Per-test settings declared in the suite."""

    __test__ = False

    skip: bool = False
    skip_reason: str | None = None
    test_on: str | None = None
    timeout: float | None = None


class TestInfo(WireModel):
    """A test in a loaded suite, with the id of its control channel."""

    __test__ = False

    name: str
    channel: int
    metadata: TestMetadata = Field(default_factory=TestMetadata)


class SuiteLoaded(WireModel):
    type: Literal["loaded"] = "loaded"
    tests: Sequence[TestInfo] = ()


class SuiteLoadError(WireModel):
    type: Literal["loadError"] = "loadError"
    message: str
    stack_trace: str | None = None


type SuiteLoadResult = Annotated[
    SuiteLoaded | SuiteLoadError, Field(discriminator="type")
]


class SuiteCommand(WireModel):
    """Runner to platform command on a suite channel after loading."""

    command: str


class RunTest(WireModel):
    """Runner to platform: run this test, reporting on `channel`."""

    command: Literal["run"] = "run"
    channel: int


class RestartTest(WireModel):
    """Runner to platform: abandon the current run of this test."""

    command: Literal["restartCurrent"] = "restartCurrent"


class Running(WireModel):
    type: Literal["running"] = "running"


class Print(WireModel):
    type: Literal["print"] = "print"
    line: str


class Error(WireModel):
    """A non-terminal error, e.g. one raised after the test body returned."""

    type: Literal["error"] = "error"
    message: str
    stack_trace: str | None = None


class Passed(WireModel):
    type: Literal["passed"] = "passed"


class Failed(WireModel):
    type: Literal["failed"] = "failed"
    message: str
    stack_trace: str | None = None


class Skipped(WireModel):
    type: Literal["skipped"] = "skipped"
    reason: str | None = None


type TestMessage = Annotated[
    Running | Print | Error | Passed | Failed | Skipped,
    Field(discriminator="type"),
]

TERMINAL_TYPES = frozenset(["passed", "failed", "skipped"])

_suite_load_result: TypeAdapter[SuiteLoaded | SuiteLoadError] = TypeAdapter(
    SuiteLoadResult
)
_test_message: TypeAdapter[Running | Print | Error | Passed | Failed | Skipped] = (
    TypeAdapter(TestMessage)
)


def parse_host_command(data: Any) -> HostCommand:
    """Validate a host command.

    Raises:
        ProtocolError: If `data` is not a host command

    """
    try:
        return HostCommand.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid host command {data!r}: {e}") from e


def parse_load_request(data: Any) -> LoadRequest:
    try:
        return LoadRequest.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid load request {data!r}: {e}") from e


def parse_suite_load_result(data: Any) -> SuiteLoaded | SuiteLoadError:
    try:
        return _suite_load_result.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid suite message {data!r}: {e}") from e


def parse_test_message(
    data: Any,
) -> Running | Print | Error | Passed | Failed | Skipped:
    try:
        return _test_message.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid test message {data!r}: {e}") from e
