"""Boolean platform selectors such as `"vm || (browser && !ie)"`."""

import re
from collections.abc import Callable, Iterable, Set
from dataclasses import dataclass, field

from platform_runner.models.platform import OperatingSystem, SuitePlatform
from platform_runner.models.runtime import Compiler, Runtime

type _Predicate = Callable[[Set[str]], bool]

_TOKEN_RE = re.compile(r"\s*(\|\||&&|[!()?:]|[A-Za-z_][A-Za-z0-9_-]*)")

CAPABILITY_VARIABLES = frozenset(
    ["vm", "dart-vm", "browser", "js", "blink", "headless", "wasm", "posix"]
)


def known_variables(runtimes: Iterable[Runtime]) -> frozenset[str]:
    """Every variable a selector may name when running on `runtimes`."""
    variables = {runtime.identifier for runtime in runtimes}
    variables.update(compiler.value for compiler in Compiler)
    variables.update(os.value for os in OperatingSystem)
    return frozenset(variables) | CAPABILITY_VARIABLES


def platform_variables(platform: SuitePlatform) -> frozenset[str]:
    """Return the variables that are true for `platform`."""
    runtime = platform.runtime
    variables = {runtime.identifier, platform.compiler.value, platform.os.value}
    if runtime.parent is not None:
        variables.add(runtime.parent.identifier)
    if runtime.is_vm:
        variables.update(("vm", "dart-vm"))
    if runtime.is_browser:
        variables.add("browser")
    if runtime.is_js:
        variables.add("js")
    if runtime.is_blink:
        variables.add("blink")
    if runtime.is_headless:
        variables.add("headless")
    if runtime.is_wasm:
        variables.add("wasm")
    if platform.os.is_posix:
        variables.add("posix")
    return frozenset(variables)


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = self._tokenize(source)
        self.position = 0
        self.variables: set[str] = set()

    def _tokenize(self, source: str) -> list[str]:
        tokens: list[str] = []
        index = 0
        while index < len(source):
            if source[index:].strip() == "":
                break
            match = _TOKEN_RE.match(source, index)
            if match is None:
                raise ValueError(
                    f"Invalid platform selector '{source}' at column {index + 1}"
                )
            tokens.append(match.group(1))
            index = match.end()
        return tokens

    def _peek(self) -> str | None:
        return self.tokens[self.position] if self.position < len(self.tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise ValueError(f"Unexpected end of platform selector '{self.source}'")
        self.position += 1
        return token

    def _expect(self, expected: str) -> None:
        token = self._next()
        if token != expected:
            raise ValueError(
                f"Expected '{expected}' but found '{token}' in '{self.source}'"
            )

    def parse(self) -> _Predicate:
        predicate = self._conditional()
        if self._peek() is not None:
            raise ValueError(
                f"Unexpected '{self._peek()}' in platform selector '{self.source}'"
            )
        return predicate

    def _conditional(self) -> _Predicate:
        condition = self._or()
        if self._peek() != "?":
            return condition
        self._next()
        when_true = self._conditional()
        self._expect(":")
        when_false = self._conditional()
        return lambda v: when_true(v) if condition(v) else when_false(v)

    def _or(self) -> _Predicate:
        left = self._and()
        while self._peek() == "||":
            self._next()
            right = self._and()
            left = (lambda a, b: lambda v: a(v) or b(v))(left, right)
        return left

    def _and(self) -> _Predicate:
        left = self._not()
        while self._peek() == "&&":
            self._next()
            right = self._not()
            left = (lambda a, b: lambda v: a(v) and b(v))(left, right)
        return left

    def _not(self) -> _Predicate:
        if self._peek() == "!":
            self._next()
            inner = self._not()
            return lambda v: not inner(v)
        return self._atom()

    def _atom(self) -> _Predicate:
        token = self._next()
        if token == "(":
            inner = self._conditional()
            self._expect(")")
            return inner
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_-]*", token):
            raise ValueError(
                f"Unexpected '{token}' in platform selector '{self.source}'"
            )
        self.variables.add(token)
        return lambda v: token in v


@dataclass(frozen=True)
class PlatformSelector:
    """A parsed platform selector expression."""

    source: str
    variables: frozenset[str] = field(default=frozenset(), compare=False)
    _predicate: _Predicate = field(
        default=lambda _: True, compare=False, repr=False
    )

    @classmethod
    def parse(cls, source: str) -> "PlatformSelector":
        """Parse a selector.

        Raises:
            ValueError: If `source` is not a valid selector

        """
        parser = _Parser(source)
        predicate = parser.parse()
        return cls(source, frozenset(parser.variables), predicate)

    def evaluate(self, platform: SuitePlatform) -> bool:
        """Whether the selector matches `platform`."""
        return self._predicate(platform_variables(platform))

    def validate(self, known_variables: Iterable[str]) -> None:
        """Raise `ValueError` if the selector uses an unknown variable."""
        unknown = self.variables - set(known_variables) - CAPABILITY_VARIABLES
        if unknown:
            raise ValueError(
                f"Undefined variable(s) {sorted(unknown)} in selector '{self.source}'"
            )


ALL = PlatformSelector("*")
