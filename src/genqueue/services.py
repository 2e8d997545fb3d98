"""Wiring of repositories and services from settings."""

from __future__ import annotations

import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import uuid4

from genqueue.config import Settings
from genqueue.ledger.repository import LedgerRepository
from genqueue.scheduler.admission import AdmissionController
from genqueue.scheduler.broker import JobBroker
from genqueue.scheduler.engine import DiskResultStore, GenerationEngine
from genqueue.scheduler.repository import JobRepository
from genqueue.scheduler.settlement import SettlementService
from genqueue.scheduler.status import StatusService
from genqueue.scheduler.worker import GenerationWorker, WorkerPool, build_engine


@dataclass(slots=True)
class Services:
    """Everything one process needs, sharing a single database."""

    settings: Settings
    ledger: LedgerRepository
    jobs: JobRepository
    settlement: SettlementService
    broker: JobBroker
    admission: AdmissionController
    status: StatusService
    result_store: DiskResultStore

    def build_worker(
        self,
        *,
        worker_id: str,
        engine: GenerationEngine | None = None,
    ) -> GenerationWorker:
        return GenerationWorker(
            jobs=self.jobs,
            broker=self.broker,
            settlement=self.settlement,
            engine=engine or build_engine(self.settings.worker),
            result_store=self.result_store,
            worker_id=worker_id,
            heartbeat_interval_seconds=self.settings.worker.heartbeat_interval_seconds,
            owns_engine=engine is None,
        )

    def build_pool(
        self,
        *,
        concurrency: int | None = None,
        engine: GenerationEngine | None = None,
    ) -> WorkerPool:
        size = concurrency or self.settings.worker.concurrency
        prefix = f"{socket.gethostname()}-{uuid4().hex[:8]}"
        return WorkerPool(
            worker_factory=lambda index: self.build_worker(
                worker_id=f"{prefix}-{index}",
                engine=engine,
            ),
            concurrency=size,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            graceful_shutdown_seconds=self.settings.worker.graceful_shutdown_seconds,
        )

    def close(self) -> None:
        self.jobs.close()
        self.ledger.close()


def build_services(settings: Settings, *, migrate: bool = True) -> Services:
    """Create repositories and services; run migrations unless told otherwise."""

    ledger = LedgerRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    if migrate:
        jobs.init_schema()
    settlement = SettlementService(jobs=jobs, ledger=ledger)
    broker = JobBroker(
        jobs=jobs,
        settlement=settlement,
        settings=settings.broker,
        concurrency=settings.worker.concurrency,
    )
    return Services(
        settings=settings,
        ledger=ledger,
        jobs=jobs,
        settlement=settlement,
        broker=broker,
        admission=AdmissionController(
            ledger=ledger,
            jobs=jobs,
            broker=broker,
            ledger_settings=settings.ledger,
            admission_settings=settings.admission,
        ),
        status=StatusService(
            jobs=jobs,
            concurrency=settings.worker.concurrency,
            default_job_seconds=settings.broker.average_job_seconds,
        ),
        result_store=DiskResultStore(settings.result_dir),
    )


@contextmanager
def open_services(settings: Settings) -> Iterator[Services]:
    services = build_services(settings)
    try:
        yield services
    finally:
        services.close()

