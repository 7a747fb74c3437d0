from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ue_devtools.config import JobSettings, Settings

pytestmark = [
    allure.epic("Toolchain Jobs"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    monkeypatch.delenv("UE_DEVTOOLS_LOG_DIR")

    settings = Settings.from_env()

    assert settings.engine.engine_path is None
    assert settings.engine.default_platform == "Win64"
    assert settings.engine.default_configuration == "Development"
    assert settings.jobs.timeout_seconds == 0
    assert settings.jobs.graceful_shutdown_seconds == 10
    assert settings.jobs.log_capacity == 1000
    assert settings.jobs.capture_tail_lines == 20000
    assert settings.jobs.log_dir == Path("Saved/Logs/ue-devtools")
    assert settings.jobs.save_logs is False
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("UE_DEVTOOLS_ENGINE_PATH", str(tmp_path))
    monkeypatch.setenv("UE_DEVTOOLS_DEFAULT_PLATFORM", "Linux")
    monkeypatch.setenv("UE_DEVTOOLS_DEFAULT_CONFIGURATION", "Shipping")
    monkeypatch.setenv("UE_DEVTOOLS_JOB_TIMEOUT_SECONDS", "3600")
    monkeypatch.setenv("UE_DEVTOOLS_GRACEFUL_SHUTDOWN_SECONDS", "2.5")
    monkeypatch.setenv("UE_DEVTOOLS_LOG_CAPACITY", "50")
    monkeypatch.setenv("UE_DEVTOOLS_SAVE_LOGS", "yes")

    settings = Settings.from_env()

    assert settings.engine.engine_path == tmp_path
    assert settings.engine.default_platform == "Linux"
    assert settings.engine.default_configuration == "Shipping"
    assert settings.jobs.timeout_seconds == 3600
    assert settings.jobs.graceful_shutdown_seconds == 2.5
    assert settings.jobs.log_capacity == 50
    assert settings.jobs.save_logs is True


def test_explicit_engine_path_wins_over_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("UE_DEVTOOLS_ENGINE_PATH", "/somewhere/else")

    settings = Settings.from_env(engine_path=tmp_path)

    assert settings.engine.engine_path == tmp_path


def test_from_env_rejects_invalid_numbers(monkeypatch) -> None:
    monkeypatch.setenv("UE_DEVTOOLS_LOG_CAPACITY", "many")

    with pytest.raises(ValueError, match="UE_DEVTOOLS_LOG_CAPACITY"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("UE_DEVTOOLS_SAVE_LOGS", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for UE_DEVTOOLS_SAVE_LOGS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("jobs", "message"),
    [
        (JobSettings(timeout_seconds=-1), "UE_DEVTOOLS_JOB_TIMEOUT_SECONDS"),
        (JobSettings(graceful_shutdown_seconds=-1), "UE_DEVTOOLS_GRACEFUL_SHUTDOWN_SECONDS"),
        (JobSettings(log_capacity=0), "UE_DEVTOOLS_LOG_CAPACITY"),
        (JobSettings(capture_tail_lines=0), "UE_DEVTOOLS_CAPTURE_TAIL_LINES"),
    ],
)
def test_validate_rejects_out_of_range_values(jobs: JobSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(jobs=jobs).validate()
