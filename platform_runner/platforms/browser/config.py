"""Configuration for browser platforms."""

from platform_runner.platforms.settings import ExecutableSettings


class BrowserConfig(ExecutableSettings):
    """Configuration for suites run in a browser.

    `host` is the interface the embedded server binds to and the host name
    the browser is pointed at.
    """

    host: str = "127.0.0.1"
