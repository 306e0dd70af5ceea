"""Engine process and data channel management."""

from .channel import BinaryChannel, SocketStream
from .process import EngineProcess

__all__ = ["BinaryChannel", "EngineProcess", "SocketStream"]
