"""Configuration for the VM platform."""

from platform_runner.platforms.settings import ExecutableSettings


class VmConfig(ExecutableSettings):
    """Configuration for suites run in a child Python process.

    The executable defaults to the interpreter running the runner.
    """

    module: str = "platform_runner.remote"
