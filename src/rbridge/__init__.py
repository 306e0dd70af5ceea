"""rbridge - drive a long-lived R engine from Python."""

from .bridge import Bridge, launch
from .config import Settings, get_settings
from .errors import (
    ConfigurationError,
    EngineClosed,
    EngineTimeout,
    LaunchError,
    ParseError,
    ProtocolError,
    RBridgeError,
    UnsupportedType,
)
from .oracle import Complete, Incomplete, ProbeResult, Unrecoverable
from .protocol.codec import Matrix

__version__ = "0.1.0"

__all__ = [
    "Bridge",
    "Complete",
    "ConfigurationError",
    "EngineClosed",
    "EngineTimeout",
    "Incomplete",
    "LaunchError",
    "Matrix",
    "ParseError",
    "ProbeResult",
    "ProtocolError",
    "RBridgeError",
    "Settings",
    "UnsupportedType",
    "Unrecoverable",
    "get_settings",
    "launch",
]
