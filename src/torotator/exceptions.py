class TorotatorError(Exception):
    """Base exception for proxy pool failures."""


class LaunchError(TorotatorError):
    """Raised when a supervised process cannot be spawned or dies during the settle window."""


class StreamError(TorotatorError):
    """Raised when the combined output of a supervised process cannot be read."""


class RenderError(TorotatorError):
    """Raised when the HAProxy configuration cannot be rendered or written."""


class HandoffError(TorotatorError):
    """Raised when a replacement HAProxy process fails to take over."""


class TerminationError(TorotatorError):
    """Raised when a supervised process cannot be killed and reaped."""


class PortExhaustedError(LaunchError):
    """Raised when every port in the configured range is currently leased."""


class FatalStartupError(TorotatorError):
    """Raised when the application cannot run at all."""


class MissingDependencyError(FatalStartupError):
    """Raised when a required collaborator program is not on the search path."""
