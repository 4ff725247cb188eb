"""Runtimes supported by the test runner."""

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Compiler(StrEnum):
    """A compiler used to turn a suite into something a runtime can load."""

    KERNEL = "kernel"
    SOURCE = "source"
    DART2JS = "dart2js"
    DART2WASM = "dart2wasm"
    EXE = "exe"


_FLAG_KEYS: Mapping[str, str] = {
    "is_vm": "isDartVM",
    "is_browser": "isBrowser",
    "is_js": "isJS",
    "is_blink": "isBlink",
    "is_headless": "isHeadless",
    "is_wasm": "isWasm",
}


@dataclass(frozen=True, kw_only=True)
class Runtime:
    """Immutable descriptor of a platform that can run test suites.

    A runtime is either a member of the built-in catalog, a custom runtime
    defined by configuration, or a child of one of those created through
    `extend`. Children inherit every capability flag from their parent and
    may not be extended further.
    """

    name: str
    identifier: str
    default_compiler: Compiler
    supported_compilers: tuple[Compiler, ...]
    parent: "Runtime | None" = None
    is_vm: bool = False
    is_browser: bool = False
    is_js: bool = False
    is_blink: bool = False
    is_headless: bool = False
    is_wasm: bool = False

    @property
    def is_child(self) -> bool:
        """Whether this runtime is based on another one."""
        return self.parent is not None

    @property
    def root(self) -> "Runtime":
        """The runtime this is based on, or this runtime itself."""
        return self.parent if self.parent is not None else self

    def extend(self, name: str, identifier: str) -> "Runtime":
        """Return a child that counts as both this runtime and `identifier`.

        Raises:
            ValueError: If this runtime is already a child

        """
        if self.parent is not None:
            raise ValueError("A child platform may not be extended.")

        return Runtime(
            name=name,
            identifier=identifier,
            default_compiler=self.default_compiler,
            supported_compilers=self.supported_compilers,
            parent=self,
            **{flag: getattr(self, flag) for flag in _FLAG_KEYS},
        )

    def serialize(self) -> str | dict[str, Any]:
        """Convert to a JSON-safe value accepted by `deserialize`."""
        if self in BUILT_IN:
            return self.identifier

        if self.parent is not None:
            return {
                "name": self.name,
                "identifier": self.identifier,
                "parent": self.parent.serialize(),
            }

        data: dict[str, Any] = {"name": self.name, "identifier": self.identifier}
        for flag, key in _FLAG_KEYS.items():
            data[key] = getattr(self, flag)
        data["defaultCompiler"] = self.default_compiler.value
        data["supportedCompilers"] = [c.value for c in self.supported_compilers]
        return data

    @classmethod
    def deserialize(cls, serialized: object) -> "Runtime":
        """Convert a value produced by `serialize` back into a runtime.

        Raises:
            ValueError: If the value is not a valid runtime descriptor

        """
        if isinstance(serialized, str):
            for runtime in BUILT_IN:
                if runtime.identifier == serialized:
                    return runtime
            raise ValueError(f"Unknown runtime identifier '{serialized}'")

        if not isinstance(serialized, Mapping):
            raise ValueError(f"Invalid runtime descriptor: {serialized!r}")

        try:
            name = str(serialized["name"])
            identifier = str(serialized["identifier"])
        except KeyError as e:
            raise ValueError(f"Runtime descriptor is missing {e}") from e

        parent = serialized.get("parent")
        if parent is not None:
            return cls.deserialize(parent).extend(name, identifier)

        default_compiler = Compiler(serialized.get("defaultCompiler", "kernel"))
        supported = tuple(
            Compiler(c)
            for c in serialized.get("supportedCompilers", [default_compiler])
        )
        flags = {
            flag: bool(serialized.get(key, False)) for flag, key in _FLAG_KEYS.items()
        }
        return cls(
            name=name,
            identifier=identifier,
            default_compiler=default_compiler,
            supported_compilers=supported,
            **flags,
        )

    def __str__(self) -> str:
        return self.name


VM = Runtime(
    name="VM",
    identifier="vm",
    default_compiler=Compiler.KERNEL,
    supported_compilers=(Compiler.KERNEL, Compiler.SOURCE, Compiler.EXE),
    is_vm=True,
)

CHROME = Runtime(
    name="Chrome",
    identifier="chrome",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS, Compiler.DART2WASM),
    is_browser=True,
    is_js=True,
    is_blink=True,
)

FIREFOX = Runtime(
    name="Firefox",
    identifier="firefox",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS, Compiler.DART2WASM),
    is_browser=True,
    is_js=True,
)

SAFARI = Runtime(
    name="Safari",
    identifier="safari",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS,),
    is_browser=True,
    is_js=True,
)

INTERNET_EXPLORER = Runtime(
    name="Internet Explorer",
    identifier="ie",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS,),
    is_browser=True,
    is_js=True,
)

PHANTOM_JS = Runtime(
    name="PhantomJS",
    identifier="phantomjs",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS,),
    is_browser=True,
    is_js=True,
    is_headless=True,
)

NODE_JS = Runtime(
    name="Node.js",
    identifier="node",
    default_compiler=Compiler.DART2JS,
    supported_compilers=(Compiler.DART2JS, Compiler.DART2WASM),
    is_js=True,
)

EXPERIMENTAL_CHROME_WASM = Runtime(
    name="ExperimentalChromeWasm",
    identifier="experimental-chrome-wasm",
    default_compiler=Compiler.DART2WASM,
    supported_compilers=(Compiler.DART2WASM,),
    is_browser=True,
    is_blink=True,
    is_wasm=True,
)

BUILT_IN: Sequence[Runtime] = (
    VM,
    CHROME,
    FIREFOX,
    SAFARI,
    INTERNET_EXPLORER,
    PHANTOM_JS,
    NODE_JS,
    EXPERIMENTAL_CHROME_WASM,
)


class RuntimeRegistry:
    """Lookup table of the built-in runtimes plus any custom definitions."""

    def __init__(self, runtimes: Sequence[Runtime] = BUILT_IN) -> None:
        self._runtimes: dict[str, Runtime] = {r.identifier: r for r in runtimes}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._runtimes

    def __iter__(self) -> Iterator[Runtime]:
        return iter(self._runtimes.values())

    def register(self, runtime: Runtime) -> None:
        """Add a custom runtime; identifiers must be unique."""
        if runtime.identifier in self._runtimes:
            raise ValueError(f"Runtime '{runtime.identifier}' is already defined")
        self._runtimes[runtime.identifier] = runtime

    def define(self, name: str, identifier: str, extends: str) -> Runtime:
        """Define and register a child of an existing runtime."""
        runtime = self.from_identifier(extends).extend(name, identifier)
        self.register(runtime)
        return runtime

    def from_identifier(self, identifier: str) -> Runtime:
        """Look up a runtime by identifier.

        Raises:
            ValueError: If no runtime has that identifier

        """
        try:
            return self._runtimes[identifier]
        except KeyError:
            available = sorted(self._runtimes)
            raise ValueError(
                f"Unknown platform '{identifier}'. Available platforms: {available}"
            ) from None

    @property
    def identifiers(self) -> Sequence[str]:
        return tuple(self._runtimes)
