"""Platform manifest definition for the plugin system."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from platform_runner.models.runtime import Runtime
from platform_runner.platforms.base import PlatformAdapter


@dataclass(frozen=True, kw_only=True)
class PlatformManifest[ConfigT: BaseModel]:
    """Manifest describing a platform plugin.

    The manifest contains references to the configuration class and the
    adapter factory function for lazy loading of adapters based on the
    identifier of the runtime they run.
    """

    config_cls: type[ConfigT]
    adapter_factory: Callable[
        [Runtime, ConfigT], AbstractAsyncContextManager[PlatformAdapter]
    ]
