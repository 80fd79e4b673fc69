from __future__ import annotations

from datetime import datetime, timezone

from mywarranties.core.errors import PersistenceError, TransientError
from mywarranties.domain.sync_models import FireReport
from mywarranties.entrypoints.background import BackgroundRunner
from tests.e2e_sync.fakes import FakeClock


class _FakeSyncService:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.tokens = []
        self.fail_cycle = False
        self.fail_fire = False

    def start(self):
        self.calls.append("start")

    def run_cycle(self, cancellation_token=None):
        self.calls.append("run_cycle")
        self.tokens.append(cancellation_token)
        if self.fail_cycle:
            raise TransientError("offline")

    def fire_due(self, now=None) -> FireReport:
        self.calls.append("fire_due")
        if self.fail_fire:
            raise PersistenceError("reminder_triggers ilegible")
        return FireReport()


def _runner(service: _FakeSyncService, clock: FakeClock) -> BackgroundRunner:
    return BackgroundRunner(service, sync_interval_minutes=15, tick_seconds=0.0, clock=clock)


def test_run_arranca_y_respeta_el_intervalo() -> None:
    service = _FakeSyncService()
    clock = FakeClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
    runner = _runner(service, clock)

    ticks = runner.run(max_ticks=2)

    assert ticks == 2
    assert service.calls == ["start", "fire_due", "fire_due"]

    clock.advance(minutes=15)
    runner.tick()

    assert service.calls[-2:] == ["run_cycle", "fire_due"]


def test_request_sync_adelanta_el_ciclo() -> None:
    service = _FakeSyncService()
    runner = _runner(service, FakeClock())
    runner.run(max_ticks=1)

    runner.request_sync()
    runner.tick()

    assert service.calls.count("run_cycle") == 1


def test_ciclo_fallido_no_impide_disparar_avisos() -> None:
    service = _FakeSyncService()
    service.fail_cycle = True
    runner = _runner(service, FakeClock())

    runner.tick()
    runner.tick()

    assert service.calls == ["run_cycle", "fire_due", "run_cycle", "fire_due"]


def test_fallo_al_disparar_no_detiene_el_runner() -> None:
    service = _FakeSyncService()
    service.fail_fire = True
    clock = FakeClock()
    runner = _runner(service, clock)

    runner.tick()
    clock.advance(minutes=15)
    runner.tick()

    assert service.calls == ["run_cycle", "fire_due", "run_cycle", "fire_due"]


def test_stop_cancela_el_ciclo_en_curso() -> None:
    service = _FakeSyncService()
    runner = _runner(service, FakeClock())
    runner.tick()

    runner.stop()

    assert service.tokens[0].is_cancelled()
    assert runner.run() == 0
