"""Runtime configuration for toolchain job supervision."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class EngineSettings:
    """Engine installation and default target settings."""

    engine_path: Path | None = None
    default_platform: str = "Win64"
    default_configuration: str = "Development"


@dataclass(slots=True)
class JobSettings:
    """Job supervision settings."""

    timeout_seconds: float = 0.0
    graceful_shutdown_seconds: float = 10.0
    log_capacity: int = 1_000
    capture_tail_lines: int = 20_000
    log_dir: Path = Path("Saved/Logs/ue-devtools")
    save_logs: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    @classmethod
    def from_env(cls, engine_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local installed engine."""

        raw_engine_path = os.getenv("UE_DEVTOOLS_ENGINE_PATH", "").strip()
        return cls(
            engine=EngineSettings(
                engine_path=engine_path or (Path(raw_engine_path) if raw_engine_path else None),
                default_platform=os.getenv("UE_DEVTOOLS_DEFAULT_PLATFORM", "Win64"),
                default_configuration=os.getenv(
                    "UE_DEVTOOLS_DEFAULT_CONFIGURATION",
                    "Development",
                ),
            ),
            jobs=JobSettings(
                timeout_seconds=_env_float("UE_DEVTOOLS_JOB_TIMEOUT_SECONDS", "0"),
                graceful_shutdown_seconds=_env_float(
                    "UE_DEVTOOLS_GRACEFUL_SHUTDOWN_SECONDS",
                    "10",
                ),
                log_capacity=_env_int("UE_DEVTOOLS_LOG_CAPACITY", "1000"),
                capture_tail_lines=_env_int("UE_DEVTOOLS_CAPTURE_TAIL_LINES", "20000"),
                log_dir=Path(os.getenv("UE_DEVTOOLS_LOG_DIR", "Saved/Logs/ue-devtools")),
                save_logs=_env_bool("UE_DEVTOOLS_SAVE_LOGS", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if not self.engine.default_platform.strip():
            raise ValueError("UE_DEVTOOLS_DEFAULT_PLATFORM must not be empty.")
        if not self.engine.default_configuration.strip():
            raise ValueError("UE_DEVTOOLS_DEFAULT_CONFIGURATION must not be empty.")
        if self.jobs.timeout_seconds < 0:
            raise ValueError("UE_DEVTOOLS_JOB_TIMEOUT_SECONDS must be >= 0.")
        if self.jobs.graceful_shutdown_seconds < 0:
            raise ValueError("UE_DEVTOOLS_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.jobs.log_capacity <= 0:
            raise ValueError("UE_DEVTOOLS_LOG_CAPACITY must be a positive integer.")
        if self.jobs.capture_tail_lines <= 0:
            raise ValueError("UE_DEVTOOLS_CAPTURE_TAIL_LINES must be a positive integer.")


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
