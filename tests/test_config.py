from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from genqueue.config import BrokerSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_match_production_queue_settings(monkeypatch) -> None:
    for name in [key for key in os.environ if key.startswith("GENQUEUE_")]:
        monkeypatch.delenv(name)

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".genqueue.db")
    assert settings.ledger.credits_per_minute == 10
    assert settings.admission.max_active_jobs_per_owner == 5
    assert settings.admission.active_job_window_seconds == 600
    assert settings.worker.concurrency == 15
    assert settings.worker.heartbeat_interval_seconds == 20.0
    assert settings.broker.rate_limit_max == 15
    assert settings.broker.stalled_interval_seconds == 900
    assert settings.broker.max_stalled_count == 1
    assert settings.broker.lock_duration_seconds == 3_600
    assert settings.worker.engine == "echo"


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GENQUEUE_WORKER_CONCURRENCY", "3")
    monkeypatch.setenv("GENQUEUE_RATE_LIMIT_DURATION_SECONDS", "2.5")
    monkeypatch.setenv("GENQUEUE_ENGINE", " Command ")
    monkeypatch.setenv("GENQUEUE_ENGINE_COMMAND", "cat")

    settings = Settings.from_env(db_path=tmp_path / "x.db")
    settings.validate()

    assert settings.db_path == tmp_path / "x.db"
    assert settings.worker.concurrency == 3
    assert settings.broker.rate_limit_duration_seconds == 2.5
    assert settings.worker.engine == "command"


def test_from_env_rejects_non_integer(monkeypatch) -> None:
    monkeypatch.setenv("GENQUEUE_MAX_ACTIVE_JOBS_PER_OWNER", "five")

    with pytest.raises(ValueError, match="GENQUEUE_MAX_ACTIVE_JOBS_PER_OWNER"):
        Settings.from_env()


def test_validate_requires_stall_interval_above_heartbeat() -> None:
    settings = Settings(
        broker=BrokerSettings(stalled_interval_seconds=10),
        worker=WorkerSettings(heartbeat_interval_seconds=20.0),
    )

    with pytest.raises(ValueError, match="GENQUEUE_STALLED_INTERVAL_SECONDS"):
        settings.validate()


def test_validate_rejects_unknown_engine() -> None:
    settings = Settings(worker=WorkerSettings(engine="gpt"))

    with pytest.raises(ValueError, match="Unsupported GENQUEUE_ENGINE"):
        settings.validate()


@pytest.mark.parametrize(
    ("engine", "variable"),
    [("command", "GENQUEUE_ENGINE_COMMAND"), ("http", "GENQUEUE_ENGINE_URL")],
)
def test_validate_requires_engine_target(engine: str, variable: str) -> None:
    settings = Settings(worker=WorkerSettings(engine=engine))

    with pytest.raises(ValueError, match=variable):
        settings.validate()


def test_validate_rejects_zero_concurrency() -> None:
    settings = Settings()
    settings = replace(settings, worker=replace(settings.worker, concurrency=0))

    with pytest.raises(ValueError, match="GENQUEUE_WORKER_CONCURRENCY"):
        settings.validate()
