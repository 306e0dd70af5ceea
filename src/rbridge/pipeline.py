"""Submit code to the engine and stream its output until completion."""

from __future__ import annotations

import re
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Protocol

from loguru import logger

from rbridge.errors import EngineClosed, EngineTimeout
from rbridge.protocol import snippets

POLL_SECONDS = 0.1
ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
SENTINEL_RE = re.compile(r'"' + re.escape(snippets.EVAL_FLAG) + r'\.(\d+)"')

EchoSink = Callable[[str], None]


class EvalState(Enum):
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    CLOSED = "closed"


class TextEngine(Protocol):
    def write(self, text: str) -> None: ...

    def flush(self) -> None: ...

    def read_line(self, timeout: float | None = None) -> str | None: ...

    def interrupt(self) -> bool: ...


def strip_escapes(line: str) -> str:
    return ANSI_ESCAPE_RE.sub("", line)


class EvalPipeline:
    """Run numbered evaluations over the shared text stream.

    Each run appends a statement printing ``"RBRIDGE.EVAL.FLAG.<run>"``. Only
    the sentinel carrying the current run number completes the read loop, so a
    sentinel left behind by an interrupted run is dropped by the next one.
    Output arriving after an interrupt belongs to the abandoned run and is
    discarded until that run's sentinel shows up.
    """

    def __init__(self, engine: TextEngine, *, poll_seconds: float = POLL_SECONDS) -> None:
        self._engine = engine
        self._poll_seconds = poll_seconds
        self._run_count = 0
        self._abandoned = 0
        self._active = False
        self._cancelled = threading.Event()
        self.state: EvalState | None = None

    @property
    def run_count(self) -> int:
        return self._run_count

    @property
    def active(self) -> bool:
        return self._active

    def run(self, expr: str, sink: EchoSink | None = None, *, timeout: float | None = None) -> bool:
        """Evaluate ``expr``; True once its sentinel arrives, False if cancelled.

        ``timeout`` bounds the wait for each output line.
        """
        self._run_count += 1
        run = self._run_count
        self.state = EvalState.SUBMITTED
        self._cancelled.clear()
        try:
            self._engine.write(snippets.eval_block(expr, run))
            self._engine.flush()
        except EngineClosed:
            self.state = EvalState.CLOSED
            raise

        with self._interrupt_scope():
            return self._stream(run, sink, timeout)

    def cancel(self) -> bool:
        """Interrupt the in-flight run. A no-op once its sentinel was consumed."""
        if not self._active or self._cancelled.is_set():
            return False
        self._cancelled.set()
        self._engine.interrupt()
        return True

    def _stream(self, run: int, sink: EchoSink | None, timeout: float | None) -> bool:
        self.state = EvalState.STREAMING
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._cancelled.is_set():
                self._abandoned = max(self._abandoned, run)
                self.state = EvalState.INTERRUPTED
                logger.debug("rbridge.eval.interrupted run={}", run)
                return False

            wait = self._poll_seconds
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                line = self._engine.read_line(timeout=wait)
            except EngineTimeout:
                if deadline is not None and time.monotonic() >= deadline:
                    self._abandoned = max(self._abandoned, run)
                    raise EngineTimeout(f"eval run {run} produced no output for {timeout}s") from None
                continue

            if line is None:
                self.state = EvalState.CLOSED
                raise EngineClosed(f"engine closed its output during eval run {run}")
            if timeout is not None:
                deadline = time.monotonic() + timeout

            stripped = strip_escapes(line)
            match = SENTINEL_RE.search(stripped)
            if match is not None:
                seen = int(match.group(1))
                if seen == run:
                    self._abandoned = 0
                    self._active = False
                    self.state = EvalState.COMPLETED
                    return True
                if seen >= self._abandoned:
                    self._abandoned = 0
                logger.debug("rbridge.eval.stale_sentinel run={} seen={}", run, seen)
                continue
            if self._abandoned:
                logger.debug("rbridge.eval.dropped run={} abandoned={}", run, self._abandoned)
                continue
            if sink is not None:
                sink(stripped)

    @contextmanager
    def _interrupt_scope(self) -> Iterator[None]:
        self._active = True
        install = threading.current_thread() is threading.main_thread()
        previous = signal.signal(signal.SIGINT, self._on_sigint) if install else None
        try:
            yield
        finally:
            self._active = False
            if install:
                signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)

    def _on_sigint(self, _signum: int, _frame: object) -> None:
        # repeated SIGINTs during one run are ignored by cancel()
        self.cancel()
