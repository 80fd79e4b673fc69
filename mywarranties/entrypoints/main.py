from __future__ import annotations

import argparse
import faulthandler
import json
import logging
import sys
from pathlib import Path
from typing import Any

from mywarranties.bootstrap.container import AppContainer, build_container
from mywarranties.bootstrap.logging import configure_logging, install_exception_hook, log_operational_error
from mywarranties.bootstrap.settings import resolve_db_path, resolve_log_dir
from mywarranties.core.errors import BusinessError, InfraError
from mywarranties.core.metrics import metrics_registry
from mywarranties.domain.models import WarrantyRecord, record_snapshot
from mywarranties.domain.time_utils import to_iso
from mywarranties.entrypoints.background import BackgroundRunner
from mywarranties.infrastructure.db import get_connection
from mywarranties.infrastructure.local_config import SyncConfigStore
from mywarranties.infrastructure.migrations import MigrationRunner

logger = logging.getLogger(__name__)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


def _record_to_dict(record: WarrantyRecord) -> dict[str, Any]:
    payload = record_snapshot(record)
    payload["sync_state"] = record.sync_state.value
    payload["base_updated_at"] = to_iso(record.base_updated_at)
    return payload


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mywarranties", description="Sincronización y avisos de garantías")
    parser.add_argument("--db", type=Path, default=None, help="Ruta al archivo SQLite")
    parser.add_argument("--data-dir", type=Path, default=None, help="Directorio con config.json y outbox")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="Ejecuta un ciclo de reconciliación y recalcula avisos")

    run_parser = subparsers.add_parser("run", help="Runner en segundo plano")
    run_parser.add_argument("--tick-seconds", type=float, default=60.0)
    run_parser.add_argument("--max-ticks", type=int, default=None)

    add_parser = subparsers.add_parser("add", help="Registra una garantía")
    add_parser.add_argument("--product", required=True)
    add_parser.add_argument("--purchase-date", required=True)
    expiration_group = add_parser.add_mutually_exclusive_group(required=True)
    expiration_group.add_argument("--expiration-date")
    expiration_group.add_argument("--months", type=int)
    add_parser.add_argument("--receipt-ref", default=None)

    subparsers.add_parser("list", help="Lista garantías activas")

    delete_parser = subparsers.add_parser("delete", help="Marca una garantía como borrada")
    delete_parser.add_argument("record_id")

    subparsers.add_parser("conflicts", help="Lista conflictos abiertos")

    resolve_parser = subparsers.add_parser("resolve", help="Resuelve un conflicto")
    resolve_parser.add_argument("conflict_id", type=int)
    resolve_parser.add_argument("--keep", choices=["local", "remote"], required=True)

    subparsers.add_parser("fire-due", help="Dispara los avisos vencidos")
    subparsers.add_parser("rebuild-triggers", help="Reconstruye los triggers desde los registros")
    subparsers.add_parser("selfcheck", help="Valida base de datos, configuración y logs")
    return parser


def _run_selfcheck(db_path: Path, data_dir: Path | None, log_dir: Path) -> int:
    checks: dict[str, Any] = {"log_dir": str(log_dir)}
    errors = 0
    connection = get_connection(db_path)
    try:
        applied = MigrationRunner(connection).apply_all()
        checks["migrations_applied"] = applied
    except Exception as exc:  # noqa: BLE001 - el selfcheck reporta cualquier fallo
        logger.exception("Selfcheck: migraciones fallidas")
        checks["migrations_error"] = str(exc)
        errors += 1
    finally:
        connection.close()
    config_store = SyncConfigStore(data_dir)
    config = config_store.load()
    checks["config_path"] = str(config_store.config_path)
    checks["config_ok"] = config is not None
    if config is None:
        errors += 1
    checks["ok"] = errors == 0
    _emit(checks)
    if errors:
        logger.error("Selfcheck falló con %s error(es)", errors)
        return 1
    logger.info("Selfcheck OK.")
    return 0


def _dispatch(container: AppContainer, args: argparse.Namespace) -> int:
    if args.command == "sync":
        report = container.sync_service.run_cycle()
        _emit(report.to_dict())
        return 1 if report.cycle.status == "failed" else 0
    if args.command == "run":
        runner = BackgroundRunner(
            container.sync_service,
            sync_interval_minutes=container.config.sync_interval_minutes,
            tick_seconds=args.tick_seconds,
        )
        try:
            ticks = runner.run(max_ticks=args.max_ticks)
        except KeyboardInterrupt:
            runner.stop()
            ticks = 0
        _emit({"ticks": ticks, "metrics": metrics_registry.snapshot()})
        return 0
    if args.command == "add":
        record = container.warranty_use_cases.create(
            args.product,
            args.purchase_date,
            expiration_date=args.expiration_date,
            warranty_months=args.months,
            receipt_ref=args.receipt_ref,
        )
        container.sync_service.refresh_triggers()
        _emit(_record_to_dict(record))
        return 0
    if args.command == "list":
        for record in container.warranty_use_cases.list_active():
            _emit(_record_to_dict(record))
        return 0
    if args.command == "delete":
        record = container.warranty_use_cases.delete(args.record_id)
        container.sync_service.refresh_triggers()
        _emit(_record_to_dict(record))
        return 0
    if args.command == "conflicts":
        for entry in container.conflicts_service.list_conflicts():
            _emit(
                {
                    "id": entry.id,
                    "record_id": entry.record_id,
                    "reason": entry.reason,
                    "local": entry.local_snapshot,
                    "remote": entry.remote_snapshot,
                    "detected_at": entry.detected_at,
                }
            )
        return 0
    if args.command == "resolve":
        resolved = container.conflicts_service.resolve(args.conflict_id, keep_local=args.keep == "local")
        container.sync_service.refresh_triggers()
        _emit({"conflict_id": args.conflict_id, "record": _record_to_dict(resolved) if resolved else None})
        return 0
    if args.command == "fire-due":
        _emit(container.sync_service.fire_due().to_dict())
        return 0
    if args.command == "rebuild-triggers":
        tickets = container.scheduler.rebuild(container.store.list_all(include_deleted=True))
        _emit({"armed": [ticket.record_id for ticket in tickets]})
        return 0
    raise ValueError(f"Comando desconocido: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir)
    install_exception_hook(log_dir)
    try:
        faulthandler.enable()
    except (OSError, ValueError):
        logger.warning("faulthandler no disponible: stderr sin descriptor de fichero")
    logger.info("Log dir: %s", log_dir)
    logger.info("Python: %s", sys.version)

    db_path = args.db or resolve_db_path()
    if args.command == "selfcheck":
        return _run_selfcheck(db_path, args.data_dir, log_dir)

    try:
        container = build_container(
            connection_factory=lambda: get_connection(db_path),
            data_dir=args.data_dir,
        )
    except BusinessError as exc:
        _emit({"error": str(exc)})
        return 2
    try:
        return _dispatch(container, args)
    except BusinessError as exc:
        logger.warning("Operación rechazada: %s", exc)
        _emit({"error": str(exc)})
        return 2
    except InfraError as exc:
        log_operational_error(logger, "Operación fallida", exc=exc, extra={"command": args.command})
        _emit({"error": str(exc)})
        return 1
    finally:
        container.connection.close()
