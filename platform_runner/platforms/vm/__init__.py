"""VM platform module."""

from platform_runner.platforms.vm.adapter import VmAdapter
from platform_runner.platforms.vm.config import VmConfig
from platform_runner.platforms.vm.manifest import vm_manifest

__all__ = ["VmAdapter", "VmConfig", "vm_manifest"]
