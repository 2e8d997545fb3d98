from __future__ import annotations

import hashlib
import json
import shlex
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

import allure
import httpx
import pytest

from genqueue.config import WorkerSettings
from genqueue.errors import EngineFailure
from genqueue.scheduler.engine import (
    CommandEngine,
    DiskResultStore,
    EchoEngine,
    EngineResult,
    HttpEngine,
)
from genqueue.scheduler.models import JobStatus, RefundStatus
from genqueue.scheduler.worker import _Heartbeat, build_engine
from genqueue.services import Services
from genqueue.storage.common import utc_now

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Execution, Heartbeats & Settlement"),
]

PYTHON = shlex.quote(sys.executable)


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "language": "en-US",
        "genre": "horror",
        "minutes": 3,
        "prompt": "The cellar door was open again.",
    }
    payload.update(overrides)
    return payload


def _submit(services: Services, *, count: int = 1, balance: int = 100) -> list[str]:
    services.ledger.top_up(owner_id="alice", amount=balance, reason="purchase")
    return [
        services.admission.submit(owner_id="alice", payload=_payload()).job_id
        for _ in range(count)
    ]


class _BlankEngine:
    def run(self, payload: dict[str, Any]) -> EngineResult:
        return EngineResult(content="   \n")


class _FixedEngine:
    def __init__(self, content: str) -> None:
        self.content = content
        self.closed = False

    def run(self, payload: dict[str, Any]) -> EngineResult:
        return EngineResult(content=self.content)

    def close(self) -> None:
        self.closed = True


def test_successful_run_stores_result_and_keeps_charge(services: Services) -> None:
    [job_id] = _submit(services)
    worker = services.build_worker(worker_id="w-1", engine=EchoEngine())

    summary = worker.run_once()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    job = services.jobs.get_job(job_id=job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.result_ref is not None
    assert job.result_ref.startswith("file://")
    stored = services.settings.result_dir / f"{job_id}-1-w-1.md"
    assert job.result_ref == stored.resolve().as_uri()
    assert "The cellar door was open again." in stored.read_text(encoding="utf-8")
    assert job.metrics["engine"] == "echo"
    assert job.metrics["size_bytes"] == stored.stat().st_size
    assert "generation_seconds" in job.metrics
    assert services.ledger.get_balance(owner_id="alice") == 70


def test_engine_failure_refunds(services: Services) -> None:
    [job_id] = _submit(services)
    worker = services.build_worker(worker_id="w-1", engine=EchoEngine(fail_with="model overloaded"))

    summary = worker.run_once()

    assert (summary.processed, summary.failed) == (1, 1)
    job = services.jobs.get_job(job_id=job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "model overloaded"
    assert services.ledger.get_balance(owner_id="alice") == 100


def test_blank_output_counts_as_failure(services: Services) -> None:
    [job_id] = _submit(services)
    worker = services.build_worker(worker_id="w-1", engine=_BlankEngine())

    worker.run_once()

    job = services.jobs.get_job(job_id=job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Generation returned empty content"
    assert services.ledger.get_balance(owner_id="alice") == 100


def test_idle_worker_reports_idle_poll(services: Services) -> None:
    worker = services.build_worker(worker_id="w-1", engine=EchoEngine())

    summary = worker.run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)


def test_stalled_job_recovered_by_second_worker_settles_once(services: Services) -> None:
    [job_id] = _submit(services)
    winner = services.build_worker(worker_id="w-a", engine=_FixedEngine("winner text\n"))
    loser = services.build_worker(worker_id="w-b", engine=_FixedEngine("loser text\n"))
    stalled_interval = services.settings.broker.stalled_interval_seconds

    first_lease = services.broker.dispatch(worker_id="w-a")
    assert first_lease is not None
    swept = services.broker.sweep_stalled(now=utc_now() + timedelta(seconds=stalled_interval + 1))
    assert [(item.job_id, item.requeued) for item in swept] == [(job_id, True)]
    second_lease = services.broker.dispatch(worker_id="w-b")
    assert second_lease is not None
    assert second_lease.attempt == 2

    winner_outcome = winner.execute(first_lease)
    loser_outcome = loser.execute(second_lease)

    assert winner_outcome.duplicate is False
    assert loser_outcome.duplicate is True
    assert loser_outcome.result_ref == winner_outcome.result_ref
    job = services.jobs.get_job(job_id=job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.duplicate_settlements == 1
    stored = services.settings.result_dir / f"{job_id}-1-w-a.md"
    assert job.result_ref == stored.resolve().as_uri()
    assert stored.read_bytes() == b"winner text\n"
    assert job.metrics["checksum_sha256"] == hashlib.sha256(b"winner text\n").hexdigest()
    assert [path.name for path in services.settings.result_dir.iterdir()] == [stored.name]
    details = services.jobs.get_job_details(job_id=job_id)
    event_types = [event.event_type for event in details.events]
    assert event_types.count("completed") == 1
    assert event_types.count("duplicate_settlement_ignored") == 1
    assert services.ledger.get_balance(owner_id="alice") == 70


def test_artifact_of_refunded_job_is_discarded(services: Services) -> None:
    [job_id] = _submit(services)
    worker = services.build_worker(worker_id="w-1", engine=_FixedEngine("too late\n"))
    job = services.broker.dispatch(worker_id="w-1")
    assert job is not None
    services.settlement.fail(job, "cancelled by operator")

    outcome = worker.execute(job)

    assert outcome.refund_status == RefundStatus.ALREADY_SETTLED
    assert services.jobs.get_job(job_id=job_id).status == JobStatus.FAILED
    assert list(services.settings.result_dir.iterdir()) == []
    assert services.ledger.get_balance(owner_id="alice") == 100


def test_heartbeat_advances_progress_and_stops_when_lease_lost(services: Services) -> None:
    [job_id] = _submit(services)
    assert services.broker.dispatch(worker_id="w-1") is not None
    heartbeat = _Heartbeat(
        jobs=services.jobs,
        job_id=job_id,
        worker_id="w-1",
        interval_seconds=0.02,
        lease_seconds=60,
    )
    heartbeat.start()
    deadline = time.monotonic() + 5
    while heartbeat.progress < 10 and time.monotonic() < deadline:
        time.sleep(0.02)

    assert services.jobs.requeue_stalled_job(job_id=job_id, worker_id="w-1", stalled_count=0)
    heartbeat._thread.join(timeout=5)

    assert not heartbeat._thread.is_alive()
    assert 5 <= services.jobs.get_job(job_id=job_id).progress <= 95


def test_pool_drains_queue_and_exits_when_idle(services: Services) -> None:
    job_ids = _submit(services, count=3)
    pool = services.build_pool(concurrency=2, engine=EchoEngine())

    summary = pool.run(exit_when_idle=True)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.remaining_job_ids == []
    for job_id in job_ids:
        assert services.jobs.get_job(job_id=job_id).status == JobStatus.COMPLETED


def test_pool_honours_max_jobs(services: Services) -> None:
    _submit(services, count=3)
    pool = services.build_pool(concurrency=2, engine=EchoEngine())

    summary = pool.run(max_jobs=1)

    assert summary.processed == 1
    assert services.jobs.count_by_status(status=JobStatus.QUEUED) == 2


def test_pool_closes_engines_it_built(services: Services, monkeypatch: pytest.MonkeyPatch) -> None:
    _submit(services, count=2)
    built: list[_FixedEngine] = []

    def _build(_: WorkerSettings) -> _FixedEngine:
        engine = _FixedEngine("story\n")
        built.append(engine)
        return engine

    monkeypatch.setattr("genqueue.services.build_engine", _build)
    pool = services.build_pool(concurrency=2)

    summary = pool.run(exit_when_idle=True)

    assert summary.succeeded == 2
    assert len(built) == 2
    assert all(engine.closed for engine in built)


def test_pool_leaves_caller_engine_open(services: Services) -> None:
    _submit(services)
    engine = _FixedEngine("story\n")

    services.build_pool(concurrency=1, engine=engine).run(exit_when_idle=True)

    assert engine.closed is False


def test_build_engine_selects_configured_engine() -> None:
    assert isinstance(build_engine(WorkerSettings()), EchoEngine)
    assert isinstance(
        build_engine(WorkerSettings(engine="command", engine_command="cat")),
        CommandEngine,
    )
    engine = build_engine(WorkerSettings(engine="http", engine_url="http://engine.local/run"))
    assert isinstance(engine, HttpEngine)
    engine.close()


def test_command_engine_passes_payload_on_stdin() -> None:
    engine = CommandEngine(
        command_template=(
            f"{PYTHON} -c 'import sys; print(sys.argv[1]); sys.stdout.write(sys.stdin.read())' "
            "{minutes}"
        ),
        timeout_seconds=30,
    )

    result = engine.run(_payload())

    first_line, body = result.content.split("\n", 1)
    assert first_line == "3"
    assert json.loads(body)["genre"] == "horror"
    assert result.metrics["engine"] == "command"


def test_command_engine_reports_exit_code_and_stderr() -> None:
    engine = CommandEngine(
        command_template=(
            f"{PYTHON} -c 'import sys; sys.stderr.write(\"bad prompt\"); sys.exit(3)'"
        ),
        timeout_seconds=30,
    )

    with pytest.raises(EngineFailure, match="code 3: bad prompt"):
        engine.run(_payload())


def test_command_engine_times_out() -> None:
    engine = CommandEngine(
        command_template=f"{PYTHON} -c 'import time; time.sleep(10)'",
        timeout_seconds=1,
    )

    with pytest.raises(EngineFailure, match="timed out"):
        engine.run(_payload())


def test_command_engine_missing_binary() -> None:
    engine = CommandEngine(command_template="genqueue-no-such-engine", timeout_seconds=5)

    with pytest.raises(EngineFailure, match="not found"):
        engine.run(_payload())


def test_http_engine_reads_json_content() -> None:
    seen: list[dict[str, Any]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"content": "Once upon a time.", "metrics": {"tokens": 5}})

    with HttpEngine(
        url="http://engine.local/run",
        timeout_seconds=5,
        transport=httpx.MockTransport(_handler),
    ) as engine:
        result = engine.run(_payload())

    assert seen == [_payload()]
    assert result.content == "Once upon a time."
    assert result.metrics == {"engine": "http", "tokens": 5}


def test_http_engine_accepts_plain_text() -> None:
    transport = httpx.MockTransport(lambda _: httpx.Response(200, text="Plain story."))

    with HttpEngine(url="http://engine.local/run", timeout_seconds=5, transport=transport) as engine:
        result = engine.run(_payload())

    assert result.content == "Plain story."


@pytest.mark.parametrize(
    ("response", "message"),
    [
        (httpx.Response(503, text="busy"), "HTTP 503"),
        (httpx.Response(200, json={"text": "wrong field"}), "no content field"),
    ],
)
def test_http_engine_errors(response: httpx.Response, message: str) -> None:
    transport = httpx.MockTransport(lambda _: response)

    with HttpEngine(url="http://engine.local/run", timeout_seconds=5, transport=transport) as engine:
        with pytest.raises(EngineFailure, match=message):
            engine.run(_payload())


def test_result_store_rejects_path_traversal(tmp_path: Path) -> None:
    store = DiskResultStore(tmp_path)

    with pytest.raises(ValueError, match="Unsafe job id"):
        store.save(job_id="../escape", attempt=1, worker_id="w-1", content="x")
    with pytest.raises(ValueError, match="Unsafe worker id"):
        store.save(job_id="job-1", attempt=1, worker_id="a/b", content="x")

    ref = store.save(job_id="job-1", attempt=1, worker_id="w-1", content="hello")
    assert ref.size_bytes == 5
    assert (tmp_path / "job-1-1-w-1.md").read_text(encoding="utf-8") == "hello"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["job-1-1-w-1.md"]


def test_result_store_keeps_attempts_apart_and_discards_inside_root(tmp_path: Path) -> None:
    store = DiskResultStore(tmp_path / "results")
    outside = tmp_path / "keep.md"
    outside.write_text("keep", encoding="utf-8")

    first = store.save(job_id="job-1", attempt=1, worker_id="w-a", content="first")
    second = store.save(job_id="job-1", attempt=2, worker_id="w-b", content="second")
    store.discard(second.uri)
    store.discard(outside.resolve().as_uri())

    assert first.uri != second.uri
    assert [path.name for path in (tmp_path / "results").iterdir()] == ["job-1-1-w-a.md"]
    assert outside.exists()
