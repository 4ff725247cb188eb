"""The platform side of the runner: suite listener and browser host."""

from platform_runner.remote.listener import RemoteListener

__all__ = ["RemoteListener"]
