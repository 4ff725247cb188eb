"""Tests for run configuration."""

import pytest
from pydantic import ValidationError

from platform_runner.config import RunnerConfig
from platform_runner.errors import ConfigError
from platform_runner.testing.factories import (
    PlatformDefinitionFactory,
    RunnerConfigFactory,
)


def test_defaults() -> None:
    """Defaults run on the VM with generous timeouts."""
    config = RunnerConfig()

    assert config.platforms == ("vm",)
    assert config.timeout == 30.0
    assert config.load_timeout == 60.0
    assert config.retry == 0
    assert config.concurrency >= 1
    assert config.global_timeout is None


@pytest.mark.parametrize(
    "values",
    [
        {"timeout": 0},
        {"load_timeout": -1},
        {"retry": -1},
        {"concurrency": 0},
        {"global_timeout": 0},
        {"compiler": "javac"},
    ],
)
def test_rejects_invalid_values(values: dict[str, object]) -> None:
    """Out of range values fail validation."""
    with pytest.raises(ValidationError):
        RunnerConfig.model_validate(values)


def test_runtime_registry_includes_custom_platforms() -> None:
    """Custom platforms are defined on top of the built-in ones."""
    config = RunnerConfigFactory.build(
        define_platforms=[
            PlatformDefinitionFactory.build(
                name="Chromium", identifier="chromium", extends="chrome"
            )
        ]
    )

    registry = config.runtime_registry()

    runtime = registry.from_identifier("chromium")
    assert runtime.name == "Chromium"
    assert runtime.root.identifier == "chrome"
    assert registry.from_identifier("vm").identifier == "vm"


def test_runtime_registry_rejects_bad_definition() -> None:
    """Definitions that extend unknown platforms are configuration errors."""
    config = RunnerConfigFactory.build(
        define_platforms=[
            PlatformDefinitionFactory.build(identifier="mine", extends="netscape")
        ]
    )

    with pytest.raises(ConfigError, match="Invalid platform definition 'mine'"):
        config.runtime_registry()


def test_settings_inherit_from_parent_platform() -> None:
    """A custom platform's settings override those of the platform it extends."""
    config = RunnerConfigFactory.build(
        grace_period=2.0,
        platform_settings={
            "chrome": {"executable": "chrome", "arguments": ["--headless"]},
            "chromium": {"executable": "chromium"},
        },
    )

    settings = config.settings_for("chromium", "chrome")

    assert settings == {
        "grace_period": 2.0,
        "executable": "chromium",
        "arguments": ["--headless"],
    }


def test_settings_for_unconfigured_platform() -> None:
    """Unconfigured platforms only get the grace period."""
    config = RunnerConfigFactory.build(grace_period=3.0)

    assert config.settings_for("node") == {"grace_period": 3.0}
