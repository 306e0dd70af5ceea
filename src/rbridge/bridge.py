"""Session facade composing the engine, data channel, oracle and eval pipeline."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from loguru import logger
from rich.console import Console

from rbridge.config import Settings, get_settings
from rbridge.engine.channel import BinaryChannel
from rbridge.engine.process import EngineProcess
from rbridge.errors import ConfigurationError, EngineClosed, EngineTimeout, LaunchError, ParseError, ProtocolError
from rbridge.exchange import DataExchange
from rbridge.oracle import CompletenessOracle, ProbeResult
from rbridge.pipeline import EchoSink, EvalPipeline
from rbridge.protocol import snippets
from rbridge.protocol.codec import WireCodec, to_python, to_tagged

Echo = bool | EchoSink | None


def launch(settings: Settings | None = None, **overrides: Any) -> Bridge:
    """Start an engine and return a ready session.

    Args:
        settings: Base settings; loaded from the environment when omitted
        **overrides: Field values applied on top of the settings

    Returns:
        Bridge bound to the new engine process
    """
    if settings is None:
        settings = get_settings(**overrides)
    elif overrides:
        settings = Settings(**{**settings.model_dump(), **overrides})

    engine = EngineProcess.launch(
        settings.executable,
        settings.engine_args(),
        interactive=settings.interactive,
        interrupt_mode=settings.resolve_interrupt_mode(),
    )
    channel = BinaryChannel(
        engine,
        hostname=settings.hostname,
        port_number=settings.port_number,
        port_width=settings.port_width,
        bind_retries=settings.bind_retries,
        persistent=settings.persistent,
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
    )
    bridge = Bridge(settings, engine, channel, WireCodec(settings.byte_order, settings.max_length))
    try:
        bridge.bootstrap()
    except (EngineClosed, EngineTimeout) as exc:
        bridge.shutdown()
        raise LaunchError(f"engine {settings.executable!r} exited during bootstrap: {exc}") from exc
    except BaseException:
        bridge.shutdown()
        raise
    return bridge


class Bridge:
    """One engine session: code evaluation plus typed value exchange.

    Calls are serialized by an internal lock; only ``interrupt`` bypasses it so
    another thread can cancel a running ``eval``.
    """

    def __init__(
        self,
        settings: Settings,
        engine: EngineProcess,
        channel: BinaryChannel,
        codec: WireCodec,
        *,
        console: Console | None = None,
    ) -> None:
        self.settings = settings
        self._engine = engine
        self._channel = channel
        self._codec = codec
        self._exchange = DataExchange(engine, channel, codec)
        self._oracle = CompletenessOracle(self._exchange)
        self._pipeline = EvalPipeline(engine)
        self._console = console or Console(soft_wrap=True)
        self._lock = threading.RLock()
        self._closed = False
        self._echo_enabled = settings.echo
        self._echo_stderr = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def echo_enabled(self) -> bool:
        return self._echo_enabled

    @property
    def interactive(self) -> bool:
        return self.settings.interactive

    @property
    def executable(self) -> str:
        return self.settings.executable

    @property
    def hostname(self) -> str:
        return self._channel.hostname

    @property
    def port_number(self) -> int | None:
        return self._channel.port

    @property
    def port_width(self) -> int:
        return self._channel.port_width

    @property
    def pid(self) -> int:
        return self._engine.pid

    def bootstrap(self) -> None:
        """Install the engine-side helpers and drain any startup output."""
        with self._lock:
            for block in snippets.bootstrap(self._codec.byte_order):
                self._engine.write_line(block)
            if not self.settings.interactive:
                self._engine.write_line(snippets.ERROR_HANDLER)
            self._engine.flush()
            self._channel.listen()
            self.eval("0", echo=False)
            logger.debug(
                "rbridge.session.ready pid={} port={} helpers=v{}",
                self._engine.pid,
                self._channel.port,
                snippets.SNIPPET_VERSION,
            )

    def eval(self, code: str, echo: Echo = None) -> bool:
        """Evaluate code in the engine.

        Returns True when the code ran to completion and False when it was
        interrupted. Output goes to the echo sink: ``echo=None`` follows the
        session setting, a bool overrides it, a callable receives each line.
        """
        with self._session():
            self._oracle.check_parseable(code)
            return self._pipeline.run(snippets.eval_call(), self._resolve_sink(echo), timeout=self.settings.read_timeout)

    def assign(self, name: str, value: object) -> object:
        with self._session():
            tagged = to_tagged(value)
            if not self._oracle.is_assignable(name):
                raise ParseError(f"Invalid assignment target: {name}")
            self._exchange.send_value(snippets.TEST_RESULT, tagged)
            return value

    def pull(self, name: str, singleton: bool = False) -> object:
        """Copy an engine value to the host.

        ``name`` may be any engine expression. Missing objects come back as
        None; a length-one non-text vector is unwrapped unless ``singleton`` is set.
        """
        with self._session():
            self._oracle.check_parseable(name)
            tagged = self._exchange.fetch_value(snippets.eval_call())
            return to_python(tagged, singleton=singleton)

    def get(self, name: str) -> object:
        return self.pull(name)

    def set(self, name: str, value: object) -> object:
        return self.assign(name, value)

    def is_complete(self, code: str | Sequence[str]) -> ProbeResult:
        with self._session():
            return self._oracle.is_complete(code)

    def is_assignable(self, name: str) -> bool:
        with self._session():
            return self._oracle.is_assignable(name)

    def echo(self, enable: bool | None = None, stderr: bool | None = None) -> tuple[bool, bool]:
        """Set default echo and whether engine messages are routed to stdout."""
        with self._lock:
            next_enabled = self._echo_enabled if enable is None else bool(enable)
            if stderr is None:
                next_stderr = self._echo_stderr if next_enabled else False
            else:
                next_stderr = bool(stderr)
            if next_stderr and not next_enabled:
                raise ConfigurationError("stderr can only be redirected while echo is enabled")

            if next_stderr != self._echo_stderr:
                self._ensure_open()
                self._engine.write_line(snippets.redirect_messages(next_stderr))
                self._engine.flush()
            self._echo_enabled, self._echo_stderr = next_enabled, next_stderr
            return self._echo_enabled, self._echo_stderr

    def interrupt(self) -> bool:
        """Cancel the running eval, if any. Data transfers are never interrupted."""
        return self._pipeline.cancel()

    def shutdown(self) -> bool:
        with self._lock:
            if self._closed:
                return True
            self._closed = True
            self._engine.terminate()
            self._channel.close()
            logger.debug("rbridge.session.closed pid={}", self._engine.pid)
            return True

    def quit(self) -> bool:
        return self.shutdown()

    def __enter__(self) -> Bridge:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        _ = (exc_type, exc, tb)
        self.shutdown()

    @contextmanager
    def _session(self) -> Iterator[None]:
        with self._lock:
            self._ensure_open()
            try:
                yield
            except ProtocolError:
                logger.warning("rbridge.session.protocol_error pid={} tearing down", self._engine.pid)
                self.shutdown()
                raise

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosed("engine session is closed")
        if not self._engine.alive:
            raise EngineClosed("engine process is no longer running")

    def _resolve_sink(self, echo: Echo) -> EchoSink | None:
        if callable(echo):
            return echo
        enabled = self._echo_enabled if echo is None else echo
        return self._print_line if enabled else None

    def _print_line(self, line: str) -> None:
        self._console.out(line, highlight=False)

