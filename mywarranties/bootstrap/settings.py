from __future__ import annotations

import os
import tempfile
from pathlib import Path

APP_DIR_NAME = "MyWarranties"


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / APP_DIR_NAME


def resolve_db_path() -> Path:
    env_path = os.environ.get("MYWARRANTIES_DB_PATH")
    if env_path:
        return Path(env_path)
    return resolve_appdata_dir() / "mywarranties.db"


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get("MYWARRANTIES_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(resolve_appdata_dir() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / APP_DIR_NAME / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root() / "logs"
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback
