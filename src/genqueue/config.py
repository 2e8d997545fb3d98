"""Runtime configuration for admission, broker, workers and the HTTP API."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_ENGINES = ("echo", "command", "http")


@dataclass(slots=True)
class LedgerSettings:
    """Credit pricing settings."""

    credits_per_minute: int = 10


@dataclass(slots=True)
class AdmissionSettings:
    """Per-owner backpressure settings."""

    max_active_jobs_per_owner: int = 5
    active_job_window_seconds: int = 600


@dataclass(slots=True)
class BrokerSettings:
    """Dispatch, rate limiting and stall detection settings."""

    rate_limit_max: int = 15
    rate_limit_duration_seconds: float = 1.0
    stalled_interval_seconds: int = 900
    max_stalled_count: int = 1
    lock_duration_seconds: int = 3_600
    average_job_seconds: int = 240


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool and engine settings."""

    concurrency: int = 15
    heartbeat_interval_seconds: float = 20.0
    poll_interval_seconds: float = 2.0
    graceful_shutdown_seconds: int = 300
    engine: str = "echo"
    engine_command: str = ""
    engine_url: str = ""
    engine_timeout_seconds: int = 1_200


@dataclass(slots=True)
class ApiSettings:
    """HTTP listener settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".genqueue.db")
    result_dir: Path = Path(".genqueue_results")
    sqlite_busy_timeout_ms: int = 5_000
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("GENQUEUE_DB_PATH", ".genqueue.db")),
            result_dir=Path(os.getenv("GENQUEUE_RESULT_DIR", ".genqueue_results")),
            sqlite_busy_timeout_ms=_env_int("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ledger=LedgerSettings(
                credits_per_minute=_env_int("GENQUEUE_CREDITS_PER_MINUTE", 10),
            ),
            admission=AdmissionSettings(
                max_active_jobs_per_owner=_env_int("GENQUEUE_MAX_ACTIVE_JOBS_PER_OWNER", 5),
                active_job_window_seconds=_env_int("GENQUEUE_ACTIVE_JOB_WINDOW_SECONDS", 600),
            ),
            broker=BrokerSettings(
                rate_limit_max=_env_int("GENQUEUE_RATE_LIMIT_MAX", 15),
                rate_limit_duration_seconds=_env_float(
                    "GENQUEUE_RATE_LIMIT_DURATION_SECONDS",
                    1.0,
                ),
                stalled_interval_seconds=_env_int("GENQUEUE_STALLED_INTERVAL_SECONDS", 900),
                max_stalled_count=_env_int("GENQUEUE_MAX_STALLED_COUNT", 1),
                lock_duration_seconds=_env_int("GENQUEUE_LOCK_DURATION_SECONDS", 3_600),
                average_job_seconds=_env_int("GENQUEUE_AVERAGE_JOB_SECONDS", 240),
            ),
            worker=WorkerSettings(
                concurrency=_env_int("GENQUEUE_WORKER_CONCURRENCY", 15),
                heartbeat_interval_seconds=_env_float(
                    "GENQUEUE_HEARTBEAT_INTERVAL_SECONDS",
                    20.0,
                ),
                poll_interval_seconds=_env_float("GENQUEUE_POLL_INTERVAL_SECONDS", 2.0),
                graceful_shutdown_seconds=_env_int("GENQUEUE_GRACEFUL_SHUTDOWN_SECONDS", 300),
                engine=os.getenv("GENQUEUE_ENGINE", "echo").strip().lower(),
                engine_command=os.getenv("GENQUEUE_ENGINE_COMMAND", "").strip(),
                engine_url=os.getenv("GENQUEUE_ENGINE_URL", "").strip(),
                engine_timeout_seconds=_env_int("GENQUEUE_ENGINE_TIMEOUT_SECONDS", 1_200),
            ),
            api=ApiSettings(
                host=os.getenv("GENQUEUE_API_HOST", "127.0.0.1"),
                port=_env_int("GENQUEUE_API_PORT", 8000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.ledger.credits_per_minute <= 0:
            raise ValueError("GENQUEUE_CREDITS_PER_MINUTE must be > 0.")
        if self.admission.max_active_jobs_per_owner <= 0:
            raise ValueError("GENQUEUE_MAX_ACTIVE_JOBS_PER_OWNER must be > 0.")
        if self.admission.active_job_window_seconds <= 0:
            raise ValueError("GENQUEUE_ACTIVE_JOB_WINDOW_SECONDS must be > 0.")
        if self.worker.concurrency <= 0:
            raise ValueError("GENQUEUE_WORKER_CONCURRENCY must be > 0.")
        if self.broker.rate_limit_max <= 0:
            raise ValueError("GENQUEUE_RATE_LIMIT_MAX must be > 0.")
        if self.broker.rate_limit_duration_seconds <= 0:
            raise ValueError("GENQUEUE_RATE_LIMIT_DURATION_SECONDS must be > 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("GENQUEUE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.broker.stalled_interval_seconds <= self.worker.heartbeat_interval_seconds:
            raise ValueError(
                "GENQUEUE_STALLED_INTERVAL_SECONDS must exceed "
                "GENQUEUE_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.broker.max_stalled_count < 0:
            raise ValueError("GENQUEUE_MAX_STALLED_COUNT must be >= 0.")
        if self.broker.lock_duration_seconds <= 0:
            raise ValueError("GENQUEUE_LOCK_DURATION_SECONDS must be > 0.")
        if self.broker.average_job_seconds <= 0:
            raise ValueError("GENQUEUE_AVERAGE_JOB_SECONDS must be > 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("GENQUEUE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.engine not in SUPPORTED_ENGINES:
            raise ValueError(
                f"Unsupported GENQUEUE_ENGINE: {self.worker.engine!r}. "
                f"Expected one of: {', '.join(SUPPORTED_ENGINES)}.",
            )
        if self.worker.engine == "command" and not self.worker.engine_command:
            raise ValueError("GENQUEUE_ENGINE_COMMAND is required when GENQUEUE_ENGINE=command.")
        if self.worker.engine == "http" and not self.worker.engine_url:
            raise ValueError("GENQUEUE_ENGINE_URL is required when GENQUEUE_ENGINE=http.")
        if self.worker.engine_timeout_seconds <= 0:
            raise ValueError("GENQUEUE_ENGINE_TIMEOUT_SECONDS must be > 0.")
        if not 0 < self.api.port < 65_536:
            raise ValueError("GENQUEUE_API_PORT must be between 1 and 65535.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
