"""Engine subprocess ownership: spawn, text streams, interrupts and exit."""

from __future__ import annotations

import os
import queue
import signal
import subprocess
import threading
from typing import IO, Literal

from loguru import logger

from rbridge.errors import EngineClosed, EngineTimeout, LaunchError
from rbridge.protocol import snippets

ESCAPE = "\x1b"
EXIT_GRACE_SECONDS = 5.0
PUMP_JOIN_SECONDS = 1.0

InterruptMode = Literal["signal", "escape"]


class EngineProcess:
    """A running engine with line-oriented stdin/stdout text streams.

    Output lines are pumped by a daemon thread into a queue so readers can wait
    with a deadline and notice cancellation between lines.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        reader: IO[bytes],
        writer: IO[bytes],
        *,
        interrupt_mode: InterruptMode = "signal",
        encoding: str = "utf-8",
    ) -> None:
        self._process = process
        self._reader = reader
        self._writer = writer
        self._interrupt_mode = interrupt_mode
        self._encoding = encoding
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._write_lock = threading.Lock()
        self._terminated = False
        self._pump_thread = threading.Thread(target=self._pump, name=f"rbridge-pump-{process.pid}", daemon=True)
        self._pump_thread.start()

    @classmethod
    def launch(
        cls,
        executable: str,
        args: list[str],
        *,
        interactive: bool = False,
        interrupt_mode: InterruptMode = "signal",
    ) -> EngineProcess:
        command = [executable, *args]
        try:
            if interactive:
                process, reader, writer = _spawn_on_pty(command)
            else:
                process = subprocess.Popen(  # noqa: S603
                    command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                )
                if process.stdin is None or process.stdout is None:
                    process.kill()
                    raise LaunchError(f"engine {executable!r} started without its stdio pipes")
                reader, writer = process.stdout, process.stdin
        except OSError as exc:
            raise LaunchError(f"cannot start engine {executable!r}: {exc}") from exc

        logger.debug("rbridge.engine.spawned pid={} command={}", process.pid, command)
        return cls(process, reader, writer, interrupt_mode=interrupt_mode)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def alive(self) -> bool:
        return not self._terminated and self._process.poll() is None

    def write(self, text: str) -> None:
        if self._terminated:
            raise EngineClosed("engine has been terminated")
        try:
            with self._write_lock:
                self._writer.write(text.encode(self._encoding))
        except (OSError, ValueError) as exc:
            raise EngineClosed(f"engine input closed: {exc}") from exc

    def write_line(self, text: str) -> None:
        self.write(text if text.endswith("\n") else f"{text}\n")

    def flush(self) -> None:
        try:
            with self._write_lock:
                self._writer.flush()
        except (OSError, ValueError) as exc:
            raise EngineClosed(f"engine input closed: {exc}") from exc

    def read_line(self, timeout: float | None = None) -> str | None:
        """Next output line without its terminator, or None once the stream hit EOF."""
        try:
            line = self._lines.get(timeout=timeout)
        except queue.Empty:
            raise EngineTimeout(f"no engine output within {timeout}s") from None
        if line is None:
            # keep EOF visible to later readers
            self._lines.put(None)
        return line

    def interrupt(self) -> bool:
        """Ask the engine to abandon the running computation."""
        if not self.alive:
            return False
        if self._interrupt_mode == "escape":
            self.write(ESCAPE)
            self.flush()
        else:
            self._process.send_signal(signal.SIGINT)
        logger.debug("rbridge.engine.interrupted pid={} mode={}", self.pid, self._interrupt_mode)
        return True

    def terminate(self) -> bool:
        """Request a clean exit, then force-close the streams. Safe to call twice."""
        if self._terminated:
            return True
        try:
            self.write_line(snippets.QUIT)
            self.flush()
        except EngineClosed:
            logger.debug("rbridge.engine.quit_skipped pid={} stream already closed", self.pid)
        self._terminated = True

        self._close_stream(self._writer)
        try:
            self._process.wait(timeout=EXIT_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("rbridge.engine.kill pid={} did not exit after quit", self.pid)
            self._process.kill()
            self._process.wait()
        # the pump owns the reader until the child side reaches EOF
        self._pump_thread.join(timeout=PUMP_JOIN_SECONDS)
        if not self._pump_thread.is_alive():
            self._close_stream(self._reader)
        logger.debug("rbridge.engine.terminated pid={} returncode={}", self.pid, self._process.returncode)
        return True

    def _close_stream(self, stream: IO[bytes]) -> None:
        try:
            stream.close()
        except OSError as exc:
            logger.debug("rbridge.engine.close_failed pid={} error={}", self.pid, exc)

    def _pump(self) -> None:
        try:
            for raw in iter(self._reader.readline, b""):
                self._lines.put(raw.decode(self._encoding, errors="replace").rstrip("\r\n"))
        except (OSError, ValueError) as exc:
            # A pty master reports EIO once the child side is gone; a closed reader raises ValueError.
            logger.debug("rbridge.engine.pump_stopped pid={} error={}", self._process.pid, exc)
        finally:
            self._lines.put(None)


def _spawn_on_pty(command: list[str]) -> tuple[subprocess.Popen[bytes], IO[bytes], IO[bytes]]:
    import pty
    import termios

    master, slave = pty.openpty()
    attrs = termios.tcgetattr(slave)
    attrs[3] &= ~termios.ECHO
    termios.tcsetattr(slave, termios.TCSANOW, attrs)
    try:
        process = subprocess.Popen(  # noqa: S603
            command,
            stdin=slave,
            stdout=slave,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError:
        os.close(master)
        raise
    finally:
        os.close(slave)
    reader = os.fdopen(master, "rb")
    writer = os.fdopen(os.dup(master), "wb")
    return process, reader, writer
