"""Browser platform manifest, shared by every browser runtime."""

from platform_runner.platforms.browser.adapter import BrowserAdapter
from platform_runner.platforms.browser.config import BrowserConfig
from platform_runner.platforms.manifest import PlatformManifest

browser_manifest = PlatformManifest(
    config_cls=BrowserConfig,
    adapter_factory=BrowserAdapter.from_config,
)
