"""Configuration of a test run."""

import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import Field

from platform_runner.errors import ConfigError
from platform_runner.models.base import Model
from platform_runner.models.runtime import Compiler, RuntimeRegistry


def _default_concurrency() -> int:
    return max(1, (os.cpu_count() or 2) // 2)


class PlatformDefinition(Model):
    """A custom platform based on an existing one."""

    name: str = Field(..., description="Human-readable platform name")
    identifier: str = Field(..., description="Identifier used with --platform")
    extends: str = Field(..., description="Identifier of the platform to extend")


class RunnerConfig(Model):
    """Settings for one invocation of the runner."""

    paths: Sequence[Path] = Field(
        default_factory=list, description="Suites to run"
    )
    platforms: Sequence[str] = Field(
        default=("vm",), description="Identifiers of the platforms to run on"
    )
    compiler: Compiler | None = Field(
        default=None, description="Compiler to use instead of each default"
    )
    timeout: float = Field(
        default=30.0, gt=0, description="Seconds a test may go without reporting"
    )
    load_timeout: float = Field(
        default=60.0, gt=0, description="Seconds a suite may take to load"
    )
    retry: int = Field(default=0, ge=0, description="Retries for failing tests")
    concurrency: int = Field(
        default_factory=_default_concurrency,
        ge=1,
        description="Suites to run at the same time",
    )
    global_timeout: float | None = Field(
        default=None, gt=0, description="Seconds the whole run may take"
    )
    grace_period: float = Field(
        default=5.0, ge=0, description="Seconds between SIGTERM and SIGKILL"
    )
    strict_completion: bool = Field(
        default=False,
        description="Fail a suite when a test reports completion twice",
    )
    debug: bool = Field(
        default=False, description="Pause browsers after each suite loads"
    )
    platform_settings: Mapping[str, Mapping[str, Any]] = Field(
        default_factory=dict,
        description="Executable settings per platform identifier",
    )
    define_platforms: Sequence[PlatformDefinition] = Field(
        default_factory=list, description="Custom platforms"
    )

    def runtime_registry(self) -> RuntimeRegistry:
        """Built-in runtimes plus the custom platforms defined here.

        Raises:
            ConfigError: If a definition extends an unknown or child platform,
                or reuses an identifier

        """
        registry = RuntimeRegistry()
        for definition in self.define_platforms:
            try:
                registry.define(
                    definition.name, definition.identifier, definition.extends
                )
            except ValueError as e:
                raise ConfigError(
                    f"Invalid platform definition '{definition.identifier}': {e}"
                ) from e
        return registry

    def settings_for(
        self, identifier: str, parent: str | None = None
    ) -> dict[str, Any]:
        """Raw executable settings for a platform, inheriting its parent's."""
        settings: dict[str, Any] = {"grace_period": self.grace_period}
        if parent is not None:
            settings.update(self.platform_settings.get(parent, {}))
        settings.update(self.platform_settings.get(identifier, {}))
        return settings
