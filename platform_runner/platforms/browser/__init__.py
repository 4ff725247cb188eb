"""Browser platform module."""

from platform_runner.platforms.browser.adapter import BrowserAdapter
from platform_runner.platforms.browser.config import BrowserConfig
from platform_runner.platforms.browser.kinds import BROWSER_KINDS, BrowserKind
from platform_runner.platforms.browser.manager import BrowserManager
from platform_runner.platforms.browser.manifest import browser_manifest

__all__ = [
    "BROWSER_KINDS",
    "BrowserAdapter",
    "BrowserConfig",
    "BrowserKind",
    "BrowserManager",
    "browser_manifest",
]
