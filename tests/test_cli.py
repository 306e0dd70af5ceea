import importlib

import pytest
from typer.testing import CliRunner

from rbridge.errors import LaunchError, ParseError, UnsupportedType
from rbridge.oracle import COMPLETE, INCOMPLETE, Unrecoverable
from rbridge.protocol.codec import Matrix

cli_module = importlib.import_module("rbridge.__main__")


class _DummyBridge:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.calls: list[tuple[str, object]] = []
        self.eval_result: bool | Exception = True
        self.probe = COMPLETE
        self.values: dict[str, object] = {}
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        _ = (exc_type, exc, tb)
        self.closed = True

    def eval(self, code: str, echo=None) -> bool:
        self.calls.append(("eval", code))
        if isinstance(self.eval_result, Exception):
            raise self.eval_result
        return self.eval_result

    def is_complete(self, code: str):
        self.calls.append(("is_complete", code))
        return self.probe

    def pull(self, name: str):
        self.calls.append(("pull", name))
        value = self.values[name]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture()
def dummy(monkeypatch: pytest.MonkeyPatch) -> _DummyBridge:
    bridge = _DummyBridge()

    def _fake_launch(**kwargs):
        bridge.kwargs = kwargs
        return bridge

    monkeypatch.setattr(cli_module, "launch", _fake_launch)
    return bridge


def test_global_options_reach_launch(dummy: _DummyBridge) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli_module.app,
        ["--executable", "/opt/R", "--port", "40000", "--interactive", "eval", "1"],
    )
    assert result.exit_code == 0
    assert dummy.kwargs == {"executable": "/opt/R", "port_number": 40000, "interactive": True}
    assert dummy.calls == [("eval", "1")]
    assert dummy.closed


def test_unset_options_are_not_forwarded(dummy: _DummyBridge) -> None:
    result = CliRunner().invoke(cli_module.app, ["eval", "1"])
    assert result.exit_code == 0
    assert dummy.kwargs == {}


def test_eval_parse_error_exits_one(dummy: _DummyBridge) -> None:
    dummy.eval_result = ParseError("Parse error (incomplete input): x<-")
    result = CliRunner().invoke(cli_module.app, ["eval", "x<-"])
    assert result.exit_code == 1
    assert dummy.closed


def test_interrupted_eval_exits_130(dummy: _DummyBridge) -> None:
    dummy.eval_result = False
    result = CliRunner().invoke(cli_module.app, ["eval", "Sys.sleep(100)"])
    assert result.exit_code == 130


def test_launch_failure_exits_two(monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken_launch(**kwargs):
        raise LaunchError("cannot start engine 'R'")

    monkeypatch.setattr(cli_module, "launch", _broken_launch)
    result = CliRunner().invoke(cli_module.app, ["eval", "1"])
    assert result.exit_code == 2


@pytest.mark.parametrize(
    ("probe", "expected", "code"),
    [
        (COMPLETE, "complete", 0),
        (INCOMPLETE, "incomplete", 0),
        (Unrecoverable(1, 4, "x<-;"), "Unrecoverable parse error: x<-;", 1),
    ],
)
def test_check_reports_classification(dummy: _DummyBridge, probe, expected: str, code: int) -> None:
    dummy.probe = probe
    result = CliRunner().invoke(cli_module.app, ["check", "x"])
    assert result.exit_code == code
    assert expected in result.output


def test_pull_runs_setup_first(dummy: _DummyBridge) -> None:
    dummy.values["x"] = [1, None, 3]
    result = CliRunner().invoke(cli_module.app, ["pull", "x", "--setup", "x <- c(1L, NA, 3L)"])
    assert result.exit_code == 0
    assert dummy.calls == [("eval", "x <- c(1L, NA, 3L)"), ("pull", "x")]
    assert "[1, None, 3]" in result.output


def test_pull_renders_matrix_rows(dummy: _DummyBridge) -> None:
    dummy.values["m"] = Matrix.from_rows([[1, 2], [3, 4]])
    result = CliRunner().invoke(cli_module.app, ["pull", "m"])
    assert result.exit_code == 0
    assert "1 2\n3 4" in result.output


def test_pull_unsupported_type_exits_one(dummy: _DummyBridge) -> None:
    dummy.values["f"] = UnsupportedType("function")
    result = CliRunner().invoke(cli_module.app, ["pull", "f"])
    assert result.exit_code == 1
