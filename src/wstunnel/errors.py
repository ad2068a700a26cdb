"""Exception types raised by the tunnel."""

from typing import Optional


class TunnelError(Exception):
    """Base class for tunnel errors."""


class ConfigurationError(TunnelError):
    """Invalid configuration (address, proxy URL, certificate or key)."""


class DialError(TunnelError):
    """The outbound half of a session could not be established."""

    def __init__(self, target: str, message: str):
        self.target = target
        super().__init__(f"{target}: {message}")


class StreamClosed(TunnelError):
    """One direction of a session reached end-of-stream or a close frame."""

    def __init__(self, direction: str, reason: Optional[str] = None):
        self.direction = direction
        self.reason = reason
        message = f"{direction} closed"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
