"""Loading of platform adapters from entry points."""

from importlib.metadata import entry_points
from typing import Any

from platform_runner.errors import PlatformNotFoundError
from platform_runner.platforms.manifest import PlatformManifest

ENTRY_POINT_GROUP = "platform_runner.platforms"


def load_platform_manifest(key: str) -> PlatformManifest[Any]:
    """Load a platform manifest by key.

    Args:
        key: The identifier of a root runtime as registered in pyproject.toml
             (e.g., "vm", "chrome")

    Returns:
        The platform manifest instance

    Raises:
        PlatformNotFoundError: If no platform with the given key is found

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            manifest: PlatformManifest[Any] = entry.load()
            return manifest

    available = sorted(e.name for e in entries)
    raise PlatformNotFoundError(
        f"Platform '{key}' not found. Available platforms: {available}"
    )
