"""VM platform manifest."""

from platform_runner.platforms.manifest import PlatformManifest
from platform_runner.platforms.vm.adapter import VmAdapter
from platform_runner.platforms.vm.config import VmConfig

vm_manifest = PlatformManifest(
    config_cls=VmConfig,
    adapter_factory=VmAdapter.from_config,
)
