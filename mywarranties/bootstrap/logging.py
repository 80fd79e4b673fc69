from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from mywarranties.core.observability import get_correlation_id, get_operation

MAIN_LOG_NAME = "mywarranties.log"
ERROR_OPERATIVO_LOG_NAME = "error_operativo.log"
CRASH_LOG_NAME = "crash.log"
LOG_MAX_BYTES_ENV = "MYWARRANTIES_LOG_MAX_BYTES"
DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10

# Campos del payload ``extra`` que se suben al primer nivel del evento.
PROMOTED_FIELDS = ("record_id", "generation", "cursor", "status")


@dataclass(frozen=True)
class _LogFile:
    name: str
    min_level: int
    max_level: int = logging.CRITICAL


def _log_files(level: int) -> tuple[_LogFile, ...]:
    return (
        _LogFile(MAIN_LOG_NAME, min_level=level),
        _LogFile(ERROR_OPERATIVO_LOG_NAME, min_level=logging.ERROR, max_level=logging.ERROR),
        _LogFile(CRASH_LOG_NAME, min_level=logging.CRITICAL),
    )


class JsonLinesFormatter(logging.Formatter):
    """Un evento JSON por línea.

    ``operation`` y ``correlation_id`` salen del contexto de la operación en
    curso salvo que el propio registro los traiga. Los campos de
    ``PROMOTED_FIELDS`` presentes en ``extra`` se copian al primer nivel para
    poder filtrar por registro o generación sin abrir el payload.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "extra", None)
        payload = payload if isinstance(payload, dict) else {}
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "origen": f"{record.module}.{record.funcName}:{record.lineno}",
            "mensaje": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        operation = payload.get("operation") or get_operation()
        if operation:
            event["operation"] = operation
        for field_name in PROMOTED_FIELDS:
            if payload.get(field_name) is not None:
                event[field_name] = payload[field_name]
        if payload:
            event["extra"] = payload
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class _LevelRangeFilter(logging.Filter):
    def __init__(self, min_level: int, max_level: int) -> None:
        super().__init__()
        self._min_level = min_level
        self._max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self._min_level <= record.levelno <= self._max_level


def _max_bytes_from_env() -> int:
    raw_value = os.getenv(LOG_MAX_BYTES_ENV, "").strip()
    if raw_value.isdigit() and int(raw_value) > 0:
        return int(raw_value)
    return DEFAULT_LOG_MAX_BYTES


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
) -> None:
    """Sustituye los handlers del root por los tres ficheros JSONL rotativos."""
    log_dir.mkdir(parents=True, exist_ok=True)
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = JsonLinesFormatter()
    for spec in _log_files(level):
        handler = RotatingFileHandler(
            log_dir / spec.name,
            maxBytes=max_bytes or _max_bytes_from_env(),
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setLevel(spec.min_level)
        handler.addFilter(_LevelRangeFilter(spec.min_level, spec.max_level))
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def log_operational_error(
    logger: logging.Logger,
    message: str,
    *,
    exc: BaseException | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """ERROR con traza y payload; acaba también en ``error_operativo.log``."""
    exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else False
    logger.error(message, exc_info=exc_info, extra={"extra": extra} if extra else None)


def _has_handler_for(path: Path) -> bool:
    target = str(path.resolve())
    return any(
        isinstance(handler, RotatingFileHandler) and handler.baseFilename == target
        for handler in logging.getLogger().handlers
    )


def write_crash_log(exc_type: type[BaseException], exc: BaseException, tb: Any, log_dir: Path) -> Path:
    """Registra el fallo en ``crash.log`` aunque el logging no esté configurado."""
    log_dir.mkdir(parents=True, exist_ok=True)
    crash_path = log_dir / CRASH_LOG_NAME
    logger = logging.getLogger("mywarranties.crash")
    fallback: RotatingFileHandler | None = None
    if not _has_handler_for(crash_path):
        fallback = RotatingFileHandler(
            crash_path,
            maxBytes=_max_bytes_from_env(),
            backupCount=DEFAULT_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fallback.setFormatter(JsonLinesFormatter())
        logger.addHandler(fallback)
    try:
        logger.critical(
            "Excepción no controlada",
            exc_info=(exc_type, exc, tb),
            extra={"extra": {"python": sys.version, "argv": list(sys.argv)}},
        )
    finally:
        if fallback is not None:
            logger.removeHandler(fallback)
            fallback.close()
    return crash_path


def install_exception_hook(log_dir: Path) -> None:
    def _handler(exc_type, exc, tb) -> None:
        try:
            write_crash_log(exc_type, exc, tb, log_dir)
        except OSError:
            sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _handler
