"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from ue_devtools.jobs.models import Invocation

_FAKE_TOOL_MODULE = "ue_devtools.jobs.fake_tool"


def fake_tool_invocation(*args: str, cwd: Path | None = None) -> Invocation:
    """Invocation running the scripted fake toolchain executable."""

    return Invocation(command=sys.executable, args=("-m", _FAKE_TOOL_MODULE, *args), cwd=cwd)


def fake_tool_argv(*args: str) -> list[str]:
    return [sys.executable, "-m", _FAKE_TOOL_MODULE, *args]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from UE_DEVTOOLS_* variables of the developer machine."""

    for name in list(os.environ):
        if name.startswith("UE_DEVTOOLS_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("UE_DEVTOOLS_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture()
def unreal_project(tmp_path) -> Path:
    """Minimal project directory with a `.uproject` descriptor."""

    project_dir = tmp_path / "Lyra"
    project_dir.mkdir()
    descriptor = project_dir / "Lyra.uproject"
    descriptor.write_text('{"FileVersion": 3, "EngineAssociation": "5.5"}', "utf-8")
    return descriptor


@pytest.fixture()
def engine_root(tmp_path) -> Path:
    root = tmp_path / "UE_5.5"
    (root / "Engine" / "Binaries").mkdir(parents=True)
    return root
