from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from mywarranties.application.reconciliation import CancellationToken
from mywarranties.application.warranty_sync_service import WarrantySyncService
from mywarranties.bootstrap.logging import log_operational_error
from mywarranties.core.errors import AppError
from mywarranties.domain.time_utils import utc_now

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Bucle de fondo: cada tick dispara triggers vencidos y cada intervalo sincroniza.

    Se detiene con ``stop()``, que además cancela el ciclo en curso entre registros.
    """

    def __init__(
        self,
        service: WarrantySyncService,
        *,
        sync_interval_minutes: int = 15,
        tick_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._service = service
        self._sync_interval = timedelta(minutes=sync_interval_minutes)
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._stop_event = stop_event or threading.Event()
        self._cancellation_token = CancellationToken()
        self._next_sync_at: datetime | None = None

    def run(self, max_ticks: int | None = None) -> int:
        ticks = 0
        logger.info("Runner en segundo plano iniciado", extra={"extra": {"interval": str(self._sync_interval)}})
        self._start()
        while not self._stop_event.is_set():
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self._stop_event.wait(self._tick_seconds)
        logger.info("Runner en segundo plano detenido", extra={"extra": {"ticks": ticks}})
        return ticks

    def _start(self) -> None:
        started_at = self._clock()
        try:
            self._service.start()
            self._next_sync_at = started_at + self._sync_interval
        except AppError as exc:
            log_operational_error(logger, "Arranque del runner fallido", exc=exc, extra={"operation": "background_start"})

    def tick(self) -> None:
        now = self._clock()
        if self._next_sync_at is None or now >= self._next_sync_at:
            try:
                self._service.run_cycle(self._cancellation_token)
                self._next_sync_at = now + self._sync_interval
            except AppError as exc:
                log_operational_error(logger, "Ciclo de segundo plano fallido", exc=exc, extra={"operation": "background_sync"})
        try:
            self._service.fire_due(now)
        except AppError as exc:
            log_operational_error(logger, "Disparo de avisos fallido", exc=exc, extra={"operation": "background_fire"})

    def request_sync(self) -> None:
        """Adelanta el siguiente ciclo al próximo tick (aviso de "registros cambiados")."""
        self._next_sync_at = None

    def stop(self) -> None:
        self._cancellation_token.cancel()
        self._stop_event.set()

    def start_in_thread(self, max_ticks: int | None = None) -> threading.Thread:
        thread = threading.Thread(target=self.run, kwargs={"max_ticks": max_ticks}, name="mywarranties-runner", daemon=True)
        thread.start()
        return thread
