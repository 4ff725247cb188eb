"""Exception types shared across the runner."""


class RunnerError(Exception):
    """Base class for runner errors."""


class ApplicationException(RunnerError):
    """Raised when a platform backend cannot be launched."""


class ProtocolError(RunnerError):
    """Raised when a peer violates the channel or suite protocol."""


class ChannelClosedError(RunnerError):
    """Raised when receiving from a channel that has been closed."""


class ChannelResetError(ChannelClosedError, ConnectionResetError):
    """Raised on every open channel when the underlying transport goes away."""


class LoadError(RunnerError):
    """Raised when a suite fails to load on its platform."""


class PlatformNotFoundError(RunnerError):
    """Raised when no platform adapter is registered for a runtime."""


class ConfigError(RunnerError):
    """Raised when the runner configuration is invalid or missing."""


class UsageError(RunnerError):
    """Raised for invalid command line usage."""
