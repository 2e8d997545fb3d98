"""Local deterministic engine for development and tests."""

from __future__ import annotations

import time
from typing import Any

from genqueue.errors import EngineFailure
from genqueue.scheduler.engine.base import EngineResult

WORDS_PER_MINUTE = 150


class EchoEngine:
    """Render the request back as a markdown document.

    ``delay_seconds`` simulates a slow engine; ``fail_with`` makes every run
    raise ``EngineFailure`` with that message.
    """

    def __init__(self, *, delay_seconds: float = 0.0, fail_with: str | None = None) -> None:
        self.delay_seconds = delay_seconds
        self.fail_with = fail_with

    def run(self, payload: dict[str, Any]) -> EngineResult:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise EngineFailure(self.fail_with)

        prompt = str(payload.get("prompt", "")).strip()
        genre = str(payload.get("genre", "story")).replace("_", " ")
        minutes = int(payload.get("minutes", 1))
        lines = [
            f"# {genre.title()} ({minutes} min, {payload.get('language', 'en-US')})",
            "",
            prompt,
        ]
        if payload.get("pov"):
            lines.extend(["", f"_Point of view: {payload['pov']}_"])
        content = "\n".join(lines) + "\n"
        words = len(content.split())
        return EngineResult(
            content=content,
            metrics={
                "engine": "echo",
                "word_count": words,
                "target_words": minutes * WORDS_PER_MINUTE,
            },
        )
