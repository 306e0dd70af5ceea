import os
import queue
import signal
import threading

import pytest

from rbridge.errors import EngineClosed, EngineTimeout
from rbridge.pipeline import EvalPipeline, EvalState, strip_escapes


class _DummyEngine:
    def __init__(self) -> None:
        self.written: list[str] = []
        self.lines: queue.Queue[str | None] = queue.Queue()
        self.interrupts = 0
        self.on_write = None

    def write(self, text: str) -> None:
        self.written.append(text)
        if self.on_write is not None:
            self.on_write(text)

    def flush(self) -> None:
        return None

    def read_line(self, timeout: float | None = None) -> str | None:
        try:
            return self.lines.get(timeout=timeout)
        except queue.Empty:
            raise EngineTimeout("quiet") from None

    def interrupt(self) -> bool:
        self.interrupts += 1
        return True

    def feed(self, *lines: str | None) -> None:
        for line in lines:
            self.lines.put(line)


def _sentinel(run: int) -> str:
    return f'[1] "RBRIDGE.EVAL.FLAG.{run}"'


def test_run_streams_output_until_its_sentinel() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.feed("[1] 2", _sentinel(1), "after")
    seen: list[str] = []

    assert pipeline.run("1 + 1", seen.append) is True
    assert seen == ["[1] 2"]
    assert pipeline.state is EvalState.COMPLETED
    assert pipeline.run_count == 1
    assert not pipeline.active
    assert "print('RBRIDGE.EVAL.FLAG.1')" in engine.written[0]
    assert engine.lines.get_nowait() == "after"


def test_stale_sentinel_from_earlier_run_is_skipped() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.feed(_sentinel(1))
    assert pipeline.run("x") is True

    engine.feed(_sentinel(1), "out", _sentinel(2))
    seen: list[str] = []
    assert pipeline.run("y", seen.append) is True
    assert seen == ["out"]


def test_escape_sequences_are_stripped_before_matching() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.feed("\x1b[32mgreen\x1b[0m", "\x1b[1m" + _sentinel(1))
    seen: list[str] = []

    assert pipeline.run("x", seen.append) is True
    assert seen == ["green"]


def test_strip_escapes() -> None:
    assert strip_escapes("\x1b[?2004hplain\x1b[K") == "plain"


def test_output_without_sink_is_dropped() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.feed("noise", _sentinel(1))
    assert pipeline.run("x", None) is True


def test_eof_mid_run_raises_engine_closed() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.feed("partial", None)

    with pytest.raises(EngineClosed):
        pipeline.run("x")
    assert pipeline.state is EvalState.CLOSED
    assert not pipeline.active


def test_idle_timeout_raises_engine_timeout() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)

    with pytest.raises(EngineTimeout, match="no output"):
        pipeline.run("Sys.sleep(10)", timeout=0.05)


def test_cancel_from_another_thread_returns_false() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)

    def _cancel_soon(_text: str) -> None:
        threading.Timer(0.05, pipeline.cancel).start()

    engine.on_write = _cancel_soon
    assert pipeline.run("Sys.sleep(10)") is False
    assert pipeline.state is EvalState.INTERRUPTED
    assert engine.interrupts == 1


def test_cancel_without_active_run_is_noop() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    assert pipeline.cancel() is False

    engine.feed(_sentinel(1))
    assert pipeline.run("x") is True
    assert pipeline.cancel() is False
    assert engine.interrupts == 0


def test_next_run_after_interrupt_drops_leftover_output() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.on_write = lambda _text: threading.Timer(0.05, pipeline.cancel).start()
    assert pipeline.run("slow") is False

    engine.on_write = None
    engine.feed("late output", _sentinel(1), "[1] 3", _sentinel(2))
    seen: list[str] = []
    assert pipeline.run("3", seen.append) is True
    assert seen == ["[1] 3"]


def test_output_after_a_timed_out_run_is_dropped() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    with pytest.raises(EngineTimeout):
        pipeline.run("Sys.sleep(10)", timeout=0.05)

    engine.feed("slept", _sentinel(1), "fresh", _sentinel(2))
    seen: list[str] = []
    assert pipeline.run("x", seen.append) is True
    assert seen == ["fresh"]


def test_drain_waits_for_the_latest_abandoned_run() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    engine.on_write = lambda _text: threading.Timer(0.05, pipeline.cancel).start()
    assert pipeline.run("slow") is False
    assert pipeline.run("slower") is False

    engine.on_write = None
    engine.feed("one", _sentinel(1), "two", _sentinel(2), "three", _sentinel(3))
    seen: list[str] = []
    assert pipeline.run("x", seen.append) is True
    assert seen == ["three"]


def test_sigint_handler_is_scoped_to_a_completed_run() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    before = signal.getsignal(signal.SIGINT)
    during: list[object] = []
    engine.feed("tick", _sentinel(1))

    assert pipeline.run("x", lambda _line: during.append(signal.getsignal(signal.SIGINT))) is True
    assert during == [pipeline._on_sigint]
    assert signal.getsignal(signal.SIGINT) == before


def test_sigint_handler_is_restored_after_engine_closed() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    before = signal.getsignal(signal.SIGINT)
    engine.feed(None)

    with pytest.raises(EngineClosed):
        pipeline.run("x")
    assert signal.getsignal(signal.SIGINT) == before


def test_sigint_handler_is_restored_after_timeout() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    before = signal.getsignal(signal.SIGINT)

    with pytest.raises(EngineTimeout):
        pipeline.run("x", timeout=0.05)
    assert signal.getsignal(signal.SIGINT) == before


def test_sigint_during_run_interrupts_the_engine() -> None:
    engine = _DummyEngine()
    pipeline = EvalPipeline(engine, poll_seconds=0.01)
    before = signal.getsignal(signal.SIGINT)
    engine.feed("working")

    assert pipeline.run("Sys.sleep(10)", lambda _line: os.kill(os.getpid(), signal.SIGINT)) is False
    assert engine.interrupts == 1
    assert pipeline.state is EvalState.INTERRUPTED
    assert signal.getsignal(signal.SIGINT) == before
