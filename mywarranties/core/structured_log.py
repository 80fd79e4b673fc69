from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

from mywarranties.core.observability import get_correlation_id


class StructuredFileLogger:
    """Logger estructurado JSON Lines para auditoría (ciclos, outbox, alarmas)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def log(self, event: str, **payload: object) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "correlation_id": get_correlation_id(),
            **payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock, self._path.open("a", encoding="utf-8") as file:
            file.write(line + "\n")
