"""The concrete platform a suite is loaded on."""

import sys
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from platform_runner.models.runtime import Compiler, Runtime


class OperatingSystem(StrEnum):
    """Operating systems a suite may be running on."""

    WINDOWS = "windows"
    MACOS = "mac-os"
    LINUX = "linux"
    ANDROID = "android"
    IOS = "ios"
    NONE = "none"

    @property
    def is_posix(self) -> bool:
        return self not in (OperatingSystem.WINDOWS, OperatingSystem.NONE)

    @classmethod
    def current(cls) -> "OperatingSystem":
        """Best guess for the operating system of this process."""
        if sys.platform.startswith("win"):
            return cls.WINDOWS
        if sys.platform == "darwin":
            return cls.MACOS
        if sys.platform.startswith("linux"):
            return cls.LINUX
        return cls.NONE


@dataclass(frozen=True, kw_only=True)
class SuitePlatform:
    """A runtime paired with a compiler and an operating system.

    Browsers report the operating system as `none` since suites running in
    them have no access to it.
    """

    runtime: Runtime
    compiler: Compiler
    os: OperatingSystem = OperatingSystem.NONE

    def __post_init__(self) -> None:
        if self.compiler not in self.runtime.supported_compilers:
            raise ValueError(
                f"The compiler {self.compiler} is not supported on {self.runtime}"
            )

    @classmethod
    def create(
        cls,
        runtime: Runtime,
        compiler: Compiler | None = None,
        os: OperatingSystem | None = None,
    ) -> "SuitePlatform":
        """Create a platform, defaulting the compiler and operating system."""
        if os is None and runtime.is_browser:
            os = OperatingSystem.NONE
        elif os is None:
            os = OperatingSystem.current()
        return cls(
            runtime=runtime,
            compiler=compiler if compiler is not None else runtime.default_compiler,
            os=os,
        )

    def serialize(self) -> dict[str, Any]:
        return {
            "runtime": self.runtime.serialize(),
            "compiler": self.compiler.value,
            "os": self.os.value,
        }

    @classmethod
    def deserialize(cls, serialized: object) -> "SuitePlatform":
        if not isinstance(serialized, Mapping):
            raise ValueError(f"Invalid platform descriptor: {serialized!r}")
        return cls(
            runtime=Runtime.deserialize(serialized["runtime"]),
            compiler=Compiler(serialized["compiler"]),
            os=OperatingSystem(serialized.get("os", "none")),
        )

    def __str__(self) -> str:
        return f"{self.runtime.name} ({self.compiler})"
