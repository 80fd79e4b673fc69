from __future__ import annotations

from threading import Lock
from typing import Any


class MetricsRegistry:
    """Contadores, gauges y tiempos en memoria del proceso."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, list[float]] = {}

    def contador(self, nombre: str) -> int:
        with self._lock:
            return self._counters.get(nombre, 0)

    def incrementar(self, nombre: str, valor: int = 1) -> None:
        with self._lock:
            self._counters[nombre] = self._counters.get(nombre, 0) + valor

    def fijar(self, nombre: str, valor: float) -> None:
        with self._lock:
            self._gauges[nombre] = valor

    def gauge(self, nombre: str) -> float | None:
        with self._lock:
            return self._gauges.get(nombre)

    def registrar_tiempo(self, nombre: str, milisegundos: float) -> None:
        with self._lock:
            self._timings.setdefault(nombre, []).append(milisegundos)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timings = {name: list(values) for name, values in self._timings.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "timings_ms": {
                name: {
                    "count": len(values),
                    "last": values[-1],
                    "avg": sum(values) / len(values),
                    "max": max(values),
                }
                for name, values in timings.items()
                if values
            },
        }


metrics_registry = MetricsRegistry()
