"""Worker runtime: execute leased jobs and always settle them."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from genqueue.config import WorkerSettings
from genqueue.errors import EngineFailure
from genqueue.scheduler.broker import JobBroker
from genqueue.scheduler.engine import (
    CommandEngine,
    DiskResultStore,
    EchoEngine,
    GenerationEngine,
    HttpEngine,
)
from genqueue.scheduler.models import JobView, RefundStatus
from genqueue.scheduler.repository import JobRepository
from genqueue.scheduler.settlement import (
    SettlementFailed,
    SettlementOutcome,
    SettlementService,
    SettlementSucceeded,
)

logger = logging.getLogger(__name__)

HEARTBEAT_PROGRESS_STEP = 5
HEARTBEAT_PROGRESS_CAP = 95


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    stalled_recovered: int = 0
    idle_polls: int = 0
    remaining_job_ids: list[str] = field(default_factory=list)

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.stalled_recovered += other.stalled_recovered
        self.idle_polls += other.idle_polls


def build_engine(settings: WorkerSettings) -> GenerationEngine:
    """Engine selected by ``GENQUEUE_ENGINE``."""

    if settings.engine == "command":
        return CommandEngine(
            command_template=settings.engine_command,
            timeout_seconds=settings.engine_timeout_seconds,
        )
    if settings.engine == "http":
        return HttpEngine(url=settings.engine_url, timeout_seconds=settings.engine_timeout_seconds)
    if settings.engine == "echo":
        return EchoEngine()
    raise ValueError(f"Unsupported engine: {settings.engine}")


class _Heartbeat:
    """Background liveness reporter for one active job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: JobRepository,
        job_id: str,
        worker_id: str,
        interval_seconds: float,
        lease_seconds: int,
    ) -> None:
        self.jobs = jobs
        self.job_id = job_id
        self.worker_id = worker_id
        self.interval_seconds = interval_seconds
        self.lease_seconds = lease_seconds
        self.progress = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"heartbeat-{job_id}",
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self.progress = min(self.progress + HEARTBEAT_PROGRESS_STEP, HEARTBEAT_PROGRESS_CAP)
            try:
                alive = self.jobs.touch_job(
                    job_id=self.job_id,
                    worker_id=self.worker_id,
                    progress=self.progress,
                    lease_seconds=self.lease_seconds,
                )
            except Exception:  # noqa: BLE001
                logger.warning("Heartbeat for job %s failed", self.job_id, exc_info=True)
                continue
            if not alive:
                logger.warning(
                    "Job %s is no longer leased by %s; heartbeat stopped",
                    self.job_id,
                    self.worker_id,
                )
                return
            logger.debug("Job %s heartbeat: %d%%", self.job_id, self.progress)


class GenerationWorker:
    """Claims one job at a time and drives it to settlement."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: JobRepository,
        broker: JobBroker,
        settlement: SettlementService,
        engine: GenerationEngine,
        result_store: DiskResultStore,
        worker_id: str,
        heartbeat_interval_seconds: float = 20.0,
        owns_engine: bool = False,
    ) -> None:
        self.jobs = jobs
        self.broker = broker
        self.settlement = settlement
        self.engine = engine
        self.result_store = result_store
        self.worker_id = worker_id
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.owns_engine = owns_engine
        self.current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Sweep stalled leases, then process at most one job."""

        summary = WorkerRunSummary()
        summary.stalled_recovered = len(self.broker.sweep_stalled())
        job = self.broker.dispatch(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.current_job_id = job.job_id
        try:
            outcome = self.execute(job)
        finally:
            self.current_job_id = None
        if isinstance(outcome, SettlementSucceeded):
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def execute(self, job: JobView) -> SettlementOutcome:
        """Run the engine for a leased job; never raises."""

        heartbeat = _Heartbeat(
            jobs=self.jobs,
            job_id=job.job_id,
            worker_id=self.worker_id,
            interval_seconds=self.heartbeat_interval_seconds,
            lease_seconds=self.broker.settings.lock_duration_seconds,
        )
        heartbeat.start()
        started = time.monotonic()
        try:
            result = self.engine.run(job.payload)
            if not result.content.strip():
                raise EngineFailure("Generation returned empty content")
            ref = self.result_store.save(
                job_id=job.job_id,
                attempt=job.attempt,
                worker_id=self.worker_id,
                content=result.content,
            )
        except Exception as error:  # noqa: BLE001
            heartbeat.stop()
            logger.warning("Job %s failed on %s: %s", job.job_id, self.worker_id, error)
            return self._fail(job, error)
        heartbeat.stop()

        duration = round(time.monotonic() - started, 1)
        metrics = {
            **result.metrics,
            "generation_seconds": duration,
            "size_bytes": ref.size_bytes,
            "checksum_sha256": ref.checksum_sha256,
        }
        logger.info("Job %s generated in %.1fs", job.job_id, duration)
        try:
            outcome = self.settlement.succeed(job, result_ref=ref.uri, metrics=metrics)
        except Exception as error:  # noqa: BLE001
            logger.error("Completion of job %s failed: %s", job.job_id, error)
            outcome = self._fail(job, error)
        if not isinstance(outcome, SettlementSucceeded) or outcome.result_ref != ref.uri:
            self._discard_unsettled(job.job_id, ref.uri)
        return outcome

    def _discard_unsettled(self, job_id: str, uri: str) -> None:
        try:
            current = self.jobs.get_job(job_id=job_id)
            if current is not None and current.result_ref == uri:
                return
            self.result_store.discard(uri)
        except Exception:  # noqa: BLE001
            logger.warning("Could not remove unsettled artifact %s", uri, exc_info=True)

    def close(self) -> None:
        """Release the engine when this worker built it."""

        close = getattr(self.engine, "close", None)
        if self.owns_engine and callable(close):
            close()

    def _fail(self, job: JobView, error: BaseException) -> SettlementFailed:
        try:
            return self.settlement.fail(job, error)
        except Exception:  # noqa: BLE001
            logger.critical(
                "Settlement of failed job %s raised; left for the stall sweep",
                job.job_id,
                exc_info=True,
            )
            return SettlementFailed(
                job_id=job.job_id,
                error=str(error),
                refund_status=RefundStatus.NOT_REFUNDED_INFRASTRUCTURE,
            )


class WorkerPool:
    """Runs ``concurrency`` workers in threads with graceful shutdown."""

    def __init__(
        self,
        *,
        worker_factory: Callable[[int], GenerationWorker],
        concurrency: int,
        poll_interval_seconds: float = 2.0,
        graceful_shutdown_seconds: int = 300,
    ) -> None:
        self.worker_factory = worker_factory
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop = threading.Event()
        self._stop_signal_name: str | None = None
        self._lock = threading.Lock()
        self._claimed = 0
        self._workers: list[GenerationWorker] = []

    def run(
        self,
        *,
        max_jobs: int | None = None,
        exit_when_idle: bool = False,
    ) -> WorkerRunSummary:
        """Run until stopped, idle (when asked) or ``max_jobs`` were processed.

        Jobs still running when the shutdown grace period ends are reported in
        ``remaining_job_ids``; they stay active until a stall sweep reclaims them.
        """

        aggregate = WorkerRunSummary()
        self._workers = [self.worker_factory(index) for index in range(self.concurrency)]
        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(worker, aggregate, max_jobs, exit_when_idle),
                daemon=True,
                name=worker.worker_id,
            )
            for worker in self._workers
        ]
        with self._signal_handlers():
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads) and not self._stop.is_set():
                self._stop.wait(timeout=0.1)

            deadline = time.monotonic() + self.graceful_shutdown_seconds
            for thread in threads:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))

        for worker, thread in zip(self._workers, threads, strict=True):
            if not thread.is_alive():
                worker.close()

        aggregate.remaining_job_ids = [
            worker.current_job_id for worker in self._workers if worker.current_job_id is not None
        ]
        if aggregate.remaining_job_ids:
            logger.warning(
                "Shutdown grace period elapsed with %d job(s) still active: %s",
                len(aggregate.remaining_job_ids),
                ", ".join(aggregate.remaining_job_ids),
            )
        return aggregate

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop.is_set():
            logger.info(
                "Stop requested (%s); waiting up to %ds for active jobs",
                signal_name,
                self.graceful_shutdown_seconds,
            )
        self._stop_signal_name = signal_name
        self._stop.set()

    def _worker_loop(
        self,
        worker: GenerationWorker,
        aggregate: WorkerRunSummary,
        max_jobs: int | None,
        exit_when_idle: bool,
    ) -> None:
        while not self._stop.is_set():
            if not self._reserve_slot(max_jobs):
                return
            try:
                summary = worker.run_once()
            except Exception:  # noqa: BLE001
                self._release_slot()
                logger.exception("Worker %s error", worker.worker_id)
                self._stop.wait(timeout=5)
                continue
            if summary.processed == 0:
                self._release_slot()
            with self._lock:
                aggregate.merge(summary)
            if summary.processed == 0:
                if exit_when_idle:
                    return
                self._stop.wait(timeout=self.poll_interval_seconds)

    def _reserve_slot(self, max_jobs: int | None) -> bool:
        with self._lock:
            if max_jobs is not None and self._claimed >= max_jobs:
                return False
            self._claimed += 1
            return True

    def _release_slot(self) -> None:
        with self._lock:
            self._claimed -= 1

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _on_stop_signal(signum: int, _frame: object | None) -> None:
            self.request_stop(signal_name=_signal_name(signum))

        previous: dict[int, object] = {}
        try:
            for signum in _STOP_SIGNALS:
                previous[signum] = signal.getsignal(signum)
                signal.signal(signum, _on_stop_signal)
        except ValueError:
            # not the main thread
            logger.debug("Stop signals not installed outside the main thread")
        try:
            yield
        finally:
            for signum, handler in previous.items():
                try:
                    signal.signal(signum, handler)  # type: ignore[arg-type]
                except ValueError:
                    logger.debug("Could not restore handler for %s", _signal_name(signum))


_STOP_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM") if hasattr(signal, name)
)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
