"""Settings for locating and starting a platform executable."""

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Self

from pydantic import BaseModel, Field

from platform_runner.models.platform import OperatingSystem


class ExecutableSettings(BaseModel):
    """How to start a platform's executable on each operating system.

    Any executable left unset falls back to the platform's default.
    """

    linux_executable: str | None = None
    mac_os_executable: str | None = None
    windows_executable: str | None = None
    arguments: Sequence[str] = Field(default_factory=list)
    environment: Mapping[str, str] = Field(default_factory=dict)
    working_directory: Path | None = None
    headless: bool = True
    grace_period: float = Field(
        default=5.0, description="Seconds between SIGTERM and SIGKILL on close"
    )

    def executable(
        self, default: str, os: OperatingSystem | None = None
    ) -> str:
        """Return the configured executable for `os`, or `default`."""
        match os or OperatingSystem.current():
            case OperatingSystem.LINUX:
                configured = self.linux_executable
            case OperatingSystem.MACOS:
                configured = self.mac_os_executable
            case OperatingSystem.WINDOWS:
                configured = self.windows_executable
            case _:
                configured = None
        return configured or default

    def with_executable(self, executable: str) -> Self:
        """Return a copy using `executable` on every operating system."""
        return self.model_copy(
            update={
                "linux_executable": executable,
                "mac_os_executable": executable,
                "windows_executable": executable,
            }
        )
