"""Private data socket between host and engine."""

from __future__ import annotations

import errno
import os
import random
import socket
import threading
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

from loguru import logger

from rbridge.errors import EngineClosed, EngineTimeout, LaunchError
from rbridge.protocol import snippets

BIND_RETRY_SECONDS = 0.05
RECV_CHUNK = 1 << 16
_RETRYABLE_BIND_ERRORS = {errno.EADDRINUSE, errno.EACCES}

T = TypeVar("T")


class TextChannel(Protocol):
    def write_line(self, text: str) -> None: ...

    def flush(self) -> None: ...


class SocketStream:
    """Blocking byte stream over the accepted engine connection."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read_exact(self, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            try:
                chunk = self._sock.recv(min(size - len(buffer), RECV_CHUNK))
            except TimeoutError:
                raise EngineTimeout(f"engine sent {len(buffer)} of {size} bytes before the deadline") from None
            except OSError as exc:
                raise EngineClosed(f"data channel failed: {exc}") from exc
            if not chunk:
                raise EngineClosed("data channel closed by the engine")
            buffer.extend(chunk)
        return bytes(buffer)

    def write(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise EngineClosed(f"data channel failed: {exc}") from exc

    def close(self) -> None:
        self._sock.close()


class BinaryChannel:
    """Owns the listening socket and the engine's dial-back connection.

    A persistent channel keeps the accepted socket between calls; a transient
    one closes it after every call. Any error inside a call drops the socket so
    the next call starts from a fresh handshake.
    """

    def __init__(
        self,
        engine: TextChannel,
        *,
        hostname: str = "127.0.0.1",
        port_number: int = 38442,
        port_width: int = 1000,
        bind_retries: int = 50,
        persistent: bool = True,
        connect_timeout: float | None = 30.0,
        read_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self.hostname = hostname
        self.port_number = port_number
        self.port_width = port_width
        self.bind_retries = bind_retries
        self.persistent = persistent
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._listener: socket.socket | None = None
        self._stream: SocketStream | None = None
        self.port: int | None = None

    @property
    def connected(self) -> bool:
        return self._stream is not None

    def listen(self) -> int:
        """Open the listener if needed and return its port."""
        return self._open_listener()[1]

    def with_session(self, fn: Callable[[SocketStream], T]) -> T:
        stream = self._stream or self._connect()
        self._stream = None
        keep = self.persistent
        try:
            return fn(stream)
        except BaseException:
            keep = False
            raise
        finally:
            if keep:
                self._stream = stream
            else:
                self._release(stream)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
            logger.debug("rbridge.channel.closed port={}", self.port)

    def _open_listener(self) -> tuple[socket.socket, int]:
        if self._listener is None or self.port is None:
            self._listener, self.port = self._bind()
            logger.debug("rbridge.channel.listening host={} port={}", self.hostname, self.port)
        return self._listener, self.port

    def _bind(self) -> tuple[socket.socket, int]:
        if self.port_width == 1:
            candidates = [self.port_number] * self.bind_retries
        else:
            candidates = random.sample(range(self.port_number, self.port_number + self.port_width), self.port_width)

        last_error: OSError | None = None
        for port in candidates:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            if os.name != "nt":
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                listener.bind((self.hostname, port))
                listener.listen(1)
            except OSError as exc:
                listener.close()
                if exc.errno not in _RETRYABLE_BIND_ERRORS:
                    raise LaunchError(f"cannot listen on {self.hostname}:{port}: {exc}") from exc
                last_error = exc
                if self.port_width == 1:
                    time.sleep(BIND_RETRY_SECONDS)
                continue
            return listener, port

        last_port = self.port_number + self.port_width - 1
        raise LaunchError(f"no free data port in {self.port_number}..{last_port}") from last_error

    def _connect(self) -> SocketStream:
        listener, port = self._open_listener()
        listener.settimeout(self._connect_timeout)
        accepted: list[socket.socket] = []
        failures: list[OSError] = []

        def _accept() -> None:
            try:
                conn, _ = listener.accept()
            except OSError as exc:
                failures.append(exc)
            else:
                accepted.append(conn)

        thread = threading.Thread(target=_accept, name=f"rbridge-accept-{port}", daemon=True)
        thread.start()
        self._engine.write_line(snippets.connect_socket(self.hostname, port))
        self._engine.flush()
        thread.join()

        error = failures[0] if failures else None
        if isinstance(error, TimeoutError):
            raise EngineTimeout(f"engine did not connect to {self.hostname}:{port} within {self._connect_timeout}s")
        if error is not None:
            raise EngineClosed(f"accepting the engine connection failed: {error}") from error
        if not accepted:
            raise EngineClosed(f"no engine connection was accepted on {self.hostname}:{port}")
        conn = accepted[0]
        conn.settimeout(self._read_timeout)
        logger.debug("rbridge.channel.connected port={}", port)
        return SocketStream(conn)

    def _release(self, stream: SocketStream) -> None:
        try:
            self._engine.write_line(snippets.CLOSE_SOCKET)
            self._engine.flush()
        except EngineClosed:
            logger.debug("rbridge.channel.release engine already closed")
        stream.close()
