"""CLI entrypoint for genqueue."""

import logging
from pathlib import Path

import rich_click as click

from genqueue import __version__
from genqueue.controllers import (
    GenqueueCliController,
    JobLookupCommand,
    LedgerQueryCommand,
    ListJobsCommand,
    SubmitJobCommand,
    TopUpCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GenqueueCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@click.group()
@click.version_option(version=__version__, prog_name="genqueue")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def genqueue(log_level: str) -> None:
    """Paid generation job queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@genqueue.group()
def db() -> None:
    """Database commands."""


@db.command("upgrade")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_upgrade(db_path: Path | None) -> None:
    """Apply schema migrations up to head."""

    _emit_lines(CONTROLLER.upgrade_db(db_path))


@genqueue.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind address; defaults to GENQUEUE_API_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65_535),
    default=None,
    help="Bind port; defaults to GENQUEUE_API_PORT.",
)
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""

    import uvicorn  # noqa: PLC0415

    from genqueue.api import create_app  # noqa: PLC0415
    from genqueue.config import Settings  # noqa: PLC0415
    from genqueue.services import open_services  # noqa: PLC0415

    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    with open_services(settings) as services:
        uvicorn.run(
            create_app(services),
            host=host or settings.api.host,
            port=port or settings.api.port,
            log_level=logging.getLevelName(logging.getLogger().level).lower(),
        )


@genqueue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Exit when the queue is idle, or keep polling until stopped.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads; defaults to GENQUEUE_WORKER_CONCURRENCY.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    concurrency: int | None,
) -> None:
    """Run the generation worker pool."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                concurrency=concurrency,
            ),
        ),
    )


@genqueue.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
@click.option("--payload", "payload_json", required=True, help="Generation payload as JSON.")
@click.option("--job-id", default=None, help="Optional caller-supplied job id.")
def jobs_submit(
    db_path: Path | None,
    owner_id: str,
    payload_json: str,
    job_id: str | None,
) -> None:
    """Reserve credits and queue a generation job."""

    _emit_lines(
        CONTROLLER.submit(
            SubmitJobCommand(
                db_path=db_path,
                owner_id=owner_id,
                payload_json=payload_json,
                job_id=job_id,
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Only show the job if owned by this id.")
@click.argument("job_id")
def jobs_status(db_path: Path | None, owner_id: str | None, job_id: str) -> None:
    """Show job status with queue estimate."""

    _emit_lines(
        CONTROLLER.status(
            JobLookupCommand(db_path=db_path, job_id=job_id, owner_id=owner_id),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
@click.option(
    "--status",
    type=click.Choice(["pending", "queued", "active", "completed", "failed"]),
    default=None,
    help="Filter by status.",
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def jobs_list(db_path: Path | None, owner_id: str | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                owner_id=owner_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job details, ledger entries and event timeline."""

    _emit_lines(CONTROLLER.inspect(JobLookupCommand(db_path=db_path, job_id=job_id)))


@jobs.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_reconcile(db_path: Path | None, job_id: str) -> None:
    """Refund a job that failed while the ledger was unavailable."""

    _emit_lines(CONTROLLER.reconcile(JobLookupCommand(db_path=db_path, job_id=job_id)))


@jobs.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_sweep(db_path: Path | None) -> None:
    """Requeue or fail stalled active jobs."""

    _emit_lines(CONTROLLER.sweep(db_path))


@genqueue.group()
def ledger() -> None:
    """Credit ledger commands."""


@ledger.command("top-up")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Credits to add.")
@click.option("--reason", default="Manual top-up", show_default=True)
def ledger_top_up(db_path: Path | None, owner_id: str, amount: int, reason: str) -> None:
    """Credit an account."""

    _emit_lines(
        CONTROLLER.top_up(
            TopUpCommand(db_path=db_path, owner_id=owner_id, amount=amount, reason=reason),
        ),
    )


@ledger.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
def ledger_balance(db_path: Path | None, owner_id: str) -> None:
    """Show current balance."""

    _emit_lines(CONTROLLER.balance(LedgerQueryCommand(db_path=db_path, owner_id=owner_id)))


@ledger.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=20, show_default=True)
def ledger_history(db_path: Path | None, owner_id: str, limit: int) -> None:
    """Show recent ledger entries, newest first."""

    _emit_lines(
        CONTROLLER.history(
            LedgerQueryCommand(db_path=db_path, owner_id=owner_id, limit=limit),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    genqueue()
