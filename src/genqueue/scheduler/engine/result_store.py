"""Durable storage for generated artifacts."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ResultRef:
    """Reference to a stored artifact."""

    uri: str
    size_bytes: int
    checksum_sha256: str


class DiskResultStore:
    """Write one markdown file per job attempt under ``root``.

    Artifacts are named ``<job_id>-<attempt>-<worker_id>.md`` so a second
    worker that re-leased a stalled job never overwrites the file the first
    one already settled with.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(self, *, job_id: str, attempt: int, worker_id: str, content: str) -> ResultRef:
        _require_safe_part("job id", job_id)
        _require_safe_part("worker id", worker_id)
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / f"{job_id}-{attempt}-{worker_id}.md"
        data = content.encode("utf-8")
        with tempfile.NamedTemporaryFile(
            dir=self.root,
            prefix=f".{job_id}-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(data)
            tmp_path = Path(handle.name)
        os.replace(tmp_path, target)
        return ResultRef(
            uri=target.resolve().as_uri(),
            size_bytes=len(data),
            checksum_sha256=hashlib.sha256(data).hexdigest(),
        )

    def discard(self, uri: str) -> None:
        """Remove an artifact that lost settlement; refs outside ``root`` are ignored."""

        path = Path(url2pathname(urlparse(uri).path)).resolve()
        if path.parent != self.root.resolve():
            logger.warning("Refusing to discard artifact outside result dir: %s", uri)
            return
        path.unlink(missing_ok=True)
        logger.info("Discarded unsettled artifact %s", path.name)


def _require_safe_part(label: str, value: str) -> None:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Unsafe {label} for result path: {value!r}")
