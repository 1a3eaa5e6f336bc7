from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol


class AuditSink(Protocol):
    """Destination for raw, pre-rewrite upstream payloads."""

    def write(self, payload: Any) -> None:
        """Persist one raw payload."""


class FileAuditSink:
    """Write each raw payload to its own timestamped JSON file.

    ``write`` is blocking; callers on the event loop run it in a worker thread.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def write(self, payload: Any) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self._directory / f"raw-{stamp}-{uuid.uuid4().hex[:8]}.json"
        path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )
