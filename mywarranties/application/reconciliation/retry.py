from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from mywarranties.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncCancelledError(Exception):
    """Error lanzado cuando una sincronización se cancela explícitamente."""


class CancellationToken:
    """Token cooperativo para cancelación de sincronizaciones."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


def raise_if_cancelled(token: CancellationToken | None) -> None:
    if token is not None and token.is_cancelled():
        raise SyncCancelledError("Sincronización cancelada")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts debe ser al menos 1.")

    def backoff_for(self, attempt: int) -> float:
        """Espera tras el intento ``attempt`` (1-based): ``initial * multiplier**(attempt-1)`` con tope."""
        backoff = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(backoff, self.max_backoff_seconds)


@dataclass
class RetryOutcome:
    attempts: int = 0
    transient_failures: int = 0


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    operation_name: str,
    sleeper: Callable[[float], None] = time.sleep,
    cancellation_token: CancellationToken | None = None,
    outcome: RetryOutcome | None = None,
) -> T:
    """Ejecuta ``operation`` reintentando solo ``TransientError``.

    Agotados los intentos se relanza el último error transitorio; cualquier
    otro error se propaga sin reintentar.
    """
    tracker = outcome if outcome is not None else RetryOutcome()
    attempt = 0
    while True:
        attempt += 1
        tracker.attempts += 1
        raise_if_cancelled(cancellation_token)
        try:
            return operation()
        except TransientError as exc:
            tracker.transient_failures += 1
            if attempt >= policy.max_attempts:
                logger.warning(
                    "Fallo transitorio persistente en %s tras %s intentos: %s",
                    operation_name,
                    attempt,
                    exc,
                )
                raise
            backoff = policy.backoff_for(attempt)
            logger.warning(
                "Fallo transitorio en %s. intento=%s/%s backoff=%.3fs",
                operation_name,
                attempt,
                policy.max_attempts,
                backoff,
            )
            _sleep_with_cancellation(backoff, cancellation_token, sleeper)


def _sleep_with_cancellation(
    seconds: float, token: CancellationToken | None, sleeper: Callable[[float], None]
) -> None:
    remaining = seconds
    while remaining > 0:
        raise_if_cancelled(token)
        step = min(0.1, remaining)
        sleeper(step)
        remaining -= step
