from __future__ import annotations

import logging
import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mywarranties.core.metrics import metrics_registry  # noqa: E402
from mywarranties.infrastructure.db import get_memory_connection  # noqa: E402
from mywarranties.infrastructure.local_config import LEAD_TIME_ENV, SYNC_INTERVAL_ENV  # noqa: E402
from mywarranties.infrastructure.migrations import run_migrations  # noqa: E402


@pytest.fixture(autouse=True)
def _entorno_aislado(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MYWARRANTIES_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "appdata"))
    monkeypatch.delenv("MYWARRANTIES_DB_PATH", raising=False)
    monkeypatch.delenv(LEAD_TIME_ENV, raising=False)
    monkeypatch.delenv(SYNC_INTERVAL_ENV, raising=False)
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = get_memory_connection()
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def _restaurar_root_logger():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(level)
