"""Node.js platform manifest."""

from platform_runner.platforms.manifest import PlatformManifest
from platform_runner.platforms.node.adapter import NodeAdapter
from platform_runner.platforms.node.config import NodeConfig

node_manifest = PlatformManifest(
    config_cls=NodeConfig,
    adapter_factory=NodeAdapter.from_config,
)
