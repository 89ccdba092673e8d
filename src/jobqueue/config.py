"""Runtime configuration for the job queue."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_RUNNER_PATTERN = r"jobqueue(?:\.main)?\s+runner\b"
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class RunnerSettings:
    """Dispatch loop settings."""

    concurrency: int = 1
    command_prefix: str = ""
    busy_sleep_seconds: float = 1.0
    idle_sleep_seconds: float = 10.0
    gc_probability: float = 0.001
    max_start_attempts: int = 0
    runner_pattern: str = DEFAULT_RUNNER_PATTERN


@dataclass(slots=True)
class RetentionSettings:
    """Retention sweep windows."""

    auto_cleanup: bool = True
    retention_days: int = 7
    aggressive_retention_days: int = 3


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"
    log_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".jobqueue.db")
    sqlite_busy_timeout_ms: int = 5_000
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a single host."""

        log_file = os.getenv("JOBQUEUE_LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("JOBQUEUE_DB_PATH", ".jobqueue.db")),
            sqlite_busy_timeout_ms=_env_int("JOBQUEUE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            runner=RunnerSettings(
                concurrency=_env_int("JOBQUEUE_CONCURRENCY", 1),
                command_prefix=os.getenv("JOBQUEUE_COMMAND_PREFIX", "").strip(),
                busy_sleep_seconds=_env_float("JOBQUEUE_BUSY_SLEEP_SECONDS", 1.0),
                idle_sleep_seconds=_env_float("JOBQUEUE_IDLE_SLEEP_SECONDS", 10.0),
                gc_probability=_env_float("JOBQUEUE_GC_PROBABILITY", 0.001),
                max_start_attempts=_env_int("JOBQUEUE_MAX_START_ATTEMPTS", 0),
                runner_pattern=os.getenv("JOBQUEUE_RUNNER_PATTERN", DEFAULT_RUNNER_PATTERN),
            ),
            retention=RetentionSettings(
                auto_cleanup=_env_bool("JOBQUEUE_AUTO_CLEANUP", default=True),
                retention_days=_env_int("JOBQUEUE_RETENTION_DAYS", 7),
                aggressive_retention_days=_env_int("JOBQUEUE_AGGRESSIVE_RETENTION_DAYS", 3),
            ),
            logging=LoggingSettings(
                level=os.getenv("JOBQUEUE_LOG_LEVEL", "INFO").strip().upper(),
                log_file=Path(log_file) if log_file else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("JOBQUEUE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.runner.concurrency <= 0:
            raise ValueError("JOBQUEUE_CONCURRENCY must be a positive integer.")
        if self.runner.busy_sleep_seconds < 0:
            raise ValueError("JOBQUEUE_BUSY_SLEEP_SECONDS must be >= 0.")
        if self.runner.idle_sleep_seconds < 0:
            raise ValueError("JOBQUEUE_IDLE_SLEEP_SECONDS must be >= 0.")
        if not 0.0 <= self.runner.gc_probability <= 1.0:
            raise ValueError("JOBQUEUE_GC_PROBABILITY must be between 0 and 1.")
        if self.runner.max_start_attempts < 0:
            raise ValueError("JOBQUEUE_MAX_START_ATTEMPTS must be >= 0 (0 means unlimited).")
        try:
            re.compile(self.runner.runner_pattern)
        except re.error as error:
            raise ValueError(
                f"JOBQUEUE_RUNNER_PATTERN is not a valid regular expression: {error}",
            ) from error
        if self.retention.retention_days < 0:
            raise ValueError("JOBQUEUE_RETENTION_DAYS must be >= 0.")
        if self.retention.aggressive_retention_days < 0:
            raise ValueError("JOBQUEUE_AGGRESSIVE_RETENTION_DAYS must be >= 0.")
        if self.logging.level not in _LOG_LEVELS:
            raise ValueError(
                f"JOBQUEUE_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, "
                f"got {self.logging.level!r}.",
            )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


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
