"""Node.js platform module."""

from platform_runner.platforms.node.adapter import NodeAdapter
from platform_runner.platforms.node.config import NodeConfig
from platform_runner.platforms.node.manifest import node_manifest

__all__ = ["NodeAdapter", "NodeConfig", "node_manifest"]
