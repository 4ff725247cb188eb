"""Configuration for the Node.js platform."""

from platform_runner.platforms.settings import ExecutableSettings


class NodeConfig(ExecutableSettings):
    """Configuration for suites run by a headless JavaScript runtime.

    The default executable is `node`, which connects back to the runner but
    cannot load Python suites itself. To run Python suites on this platform,
    point `executable` at a Python interpreter and set `arguments` to
    `["-m", "platform_runner.remote"]`.
    """

    host: str = "127.0.0.1"
