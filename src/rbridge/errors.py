"""Exception types raised by the R bridge."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rbridge.oracle import ProbeResult


class RBridgeError(Exception):
    """Base exception for rbridge."""


class ConfigurationError(RBridgeError):
    """Raised when settings or option combinations are invalid."""


class LaunchError(RBridgeError):
    """Raised when the engine process or its data port cannot be started."""


class EngineClosed(RBridgeError):
    """Raised after shutdown or when a channel to the engine closed unexpectedly."""


class EngineTimeout(RBridgeError):
    """Raised when the engine did not answer within the configured deadline."""


class ParseError(RBridgeError):
    """Raised when code is incomplete or unparseable, or an assignment target is invalid."""

    def __init__(self, message: str, probe: ProbeResult | None = None) -> None:
        super().__init__(message)
        self.probe = probe


class UnsupportedType(RBridgeError):
    """Raised when a value has no wire encoding on one side of the bridge."""

    def __init__(self, diagnostic: str) -> None:
        super().__init__(f"Unsupported data type: {diagnostic}")
        self.diagnostic = diagnostic


class ProtocolError(RBridgeError):
    """Raised when binary channel framing can no longer be trusted."""
