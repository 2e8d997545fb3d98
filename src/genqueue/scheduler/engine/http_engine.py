"""HTTP engine: delegate generation to a remote service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from genqueue.errors import EngineFailure
from genqueue.scheduler.engine.base import EngineResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = "genqueue-worker/1.0"


class HttpEngine:
    """POST the payload as JSON and read ``{"content": ..., "metrics": {...}}`` back.

    A plain-text response body is accepted as the content itself.
    """

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def run(self, payload: dict[str, Any]) -> EngineResult:
        try:
            response = self._client.post(self.url, json=payload)
        except httpx.TimeoutException as error:
            raise EngineFailure(f"Engine request to {self.url} timed out") from error
        except httpx.HTTPError as error:
            raise EngineFailure(f"Engine request to {self.url} failed: {error}") from error

        if not response.is_success:
            raise EngineFailure(f"Engine returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            return EngineResult(content=response.text, metrics={"engine": "http"})
        try:
            body = response.json()
        except ValueError as error:
            raise EngineFailure("Engine returned malformed JSON") from error
        if not isinstance(body, dict) or not isinstance(body.get("content"), str):
            raise EngineFailure("Engine response has no content field")
        metrics = body.get("metrics")
        return EngineResult(
            content=body["content"],
            metrics={"engine": "http", **(metrics if isinstance(metrics, dict) else {})},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpEngine:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
