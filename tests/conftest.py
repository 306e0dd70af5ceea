from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.upper().startswith("RBRIDGE_"):
            monkeypatch.delenv(key, raising=False)
    # Settings also read ./.env
    monkeypatch.chdir(tmp_path)
