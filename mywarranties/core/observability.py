from __future__ import annotations

from contextlib import AbstractContextManager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
import uuid
from typing import Any

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_OPERATION: ContextVar[str | None] = ContextVar("operation", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def get_operation() -> str | None:
    return _OPERATION.get()


def set_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _CORRELATION_ID.reset(token)


class OperationContext(AbstractContextManager["OperationContext"]):
    """Asocia un correlation_id a todo lo que se loguea dentro de una operación.

    Cada ciclo de reconciliación y cada disparo de recordatorio abre su propio
    contexto, de forma que las líneas JSONL de un mismo ciclo se pueden agrupar.
    Los contextos anidados reutilizan el correlation_id del padre.
    """

    def __init__(self, operation_name: str) -> None:
        self.operation_name = operation_name
        self.correlation_id = get_correlation_id() or generate_correlation_id()
        self._correlation_token: Token[str | None] | None = None
        self._operation_token: Token[str | None] | None = None

    def __enter__(self) -> "OperationContext":
        self._correlation_token = set_correlation_id(self.correlation_id)
        self._operation_token = _OPERATION.set(self.operation_name)
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        if self._operation_token is not None:
            _OPERATION.reset(self._operation_token)
        if self._correlation_token is not None:
            reset_correlation_id(self._correlation_token)
        return None


def log_event(logger: Any, event_name: str, payload: dict[str, Any], correlation_id: str | None = None) -> dict[str, Any]:
    resolved_id = correlation_id or get_correlation_id() or generate_correlation_id()
    event = {
        "event": event_name,
        "correlation_id": resolved_id,
        "operation": get_operation(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info(
        event_name,
        extra={
            "correlation_id": resolved_id,
            "extra": event,
        },
    )
    return event
