"""Loading of the runner configuration file."""

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from platform_runner.config import RunnerConfig
from platform_runner.errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("platform_test.yaml")


async def load_config(
    path: Path | None = None, overrides: Mapping[str, Any] | None = None
) -> RunnerConfig:
    """Load the run configuration, applying command line overrides.

    Args:
        path: Configuration file; `platform_test.yaml` in the working
              directory is used if it exists and no path is given
        overrides: Values that replace those from the file; None values are
                   ignored

    Returns:
        The validated configuration

    Raises:
        ConfigError: If an explicit file is missing, or the configuration
                     is invalid

    """
    data: dict[str, Any] = {}
    config_file = path or DEFAULT_CONFIG_FILE
    if config_file.is_file():
        log.debug("Loading configuration from %s", config_file)
        data = await asyncio.to_thread(_read_yaml, config_file)
    elif path is not None:
        raise ConfigError(f"Configuration file {path} does not exist")

    if overrides:
        data.update(
            {key: value for key, value in overrides.items() if value is not None}
        )

    try:
        return RunnerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f"{path} must contain a mapping of settings")
    return content
