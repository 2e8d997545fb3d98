"""Subprocess-based engine for operator-configured generators."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
from typing import Any

from genqueue.errors import EngineFailure
from genqueue.scheduler.engine.base import EngineResult

TIMEOUT_EXIT_CODE = 124


class CommandEngine:
    """Run an external command with the payload JSON on stdin.

    The command template may reference ``{language}``, ``{genre}`` and
    ``{minutes}``; the generated document is read from stdout.
    """

    def __init__(self, *, command_template: str, timeout_seconds: int) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def run(self, payload: dict[str, Any]) -> EngineResult:
        run_args = _build_run_args(command_template=self.command_template, payload=payload)
        env = os.environ.copy()
        env["GENQUEUE_JOB_LANGUAGE"] = str(payload.get("language", ""))
        env["GENQUEUE_JOB_MINUTES"] = str(payload.get("minutes", ""))

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
            )
        except FileNotFoundError as error:
            raise EngineFailure(f"Engine command not found: {run_args[0]}") from error
        except OSError as error:
            raise EngineFailure(f"Engine command failed to start: {error}") from error

        try:
            stdout, stderr = process.communicate(
                input=json.dumps(payload, ensure_ascii=False),
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            _terminate_process(process)
            raise EngineFailure(
                f"Engine timed out after {self.timeout_seconds}s "
                f"(exit code {TIMEOUT_EXIT_CODE})",
            ) from error

        if process.returncode != 0:
            detail = (stderr or "").strip().splitlines()
            tail = detail[-1] if detail else "no stderr output"
            raise EngineFailure(f"Engine exited with code {process.returncode}: {tail}")
        if not stdout.strip():
            raise EngineFailure("Engine returned empty output")
        return EngineResult(
            content=stdout,
            metrics={
                "engine": "command",
                "word_count": len(stdout.split()),
            },
        )


def _build_run_args(*, command_template: str, payload: dict[str, Any]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise EngineFailure("Engine command template is empty.")
    try:
        rendered = stripped.format(
            language=shlex.quote(str(payload.get("language", ""))),
            genre=shlex.quote(str(payload.get("genre", ""))),
            minutes=shlex.quote(str(payload.get("minutes", ""))),
        )
    except (KeyError, IndexError) as error:
        raise EngineFailure(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise EngineFailure("Engine command template rendered empty command.")
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
