"""Engine interface for job execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class EngineResult:
    """Generated artifact plus engine-reported metrics."""

    content: str
    metrics: dict[str, Any] = field(default_factory=dict)


class GenerationEngine(Protocol):
    """Protocol implemented by generation engines."""

    def run(self, payload: dict[str, Any]) -> EngineResult:
        """Generate content for one validated payload; may raise."""
