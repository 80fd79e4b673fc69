from __future__ import annotations

import argparse
import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from mywarranties.bootstrap.logging import configure_logging
from mywarranties.bootstrap.settings import resolve_db_path, resolve_log_dir
from mywarranties.core.errors import PersistenceError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


@dataclass(frozen=True)
class MigrationDefinition:
    version: int
    name: str
    up_sql: Path
    down_sql: Path

    def checksum(self) -> str:
        return hashlib.sha256(self.up_sql.read_bytes()).hexdigest()


class MigrationRunner:
    def __init__(self, connection: sqlite3.Connection, migrations_dir: Path | None = None) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self.migrations_dir = migrations_dir or MIGRATIONS_DIR
        self.migrations = self._discover_migrations()

    def apply_all(self) -> list[int]:
        self._ensure_history_table()
        applied = self._applied_checksums()
        newly_applied: list[int] = []
        for migration in self.migrations:
            if migration.version in applied:
                if applied[migration.version] != migration.checksum():
                    logger.warning(
                        "La migración %04d_%s cambió tras aplicarse; se ignora el nuevo contenido.",
                        migration.version,
                        migration.name,
                    )
                continue
            self._apply_migration(migration)
            newly_applied.append(migration.version)
        return newly_applied

    def rollback(self, steps: int = 1) -> list[int]:
        self._ensure_history_table()
        rows = self.connection.execute(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT ?", (steps,)
        ).fetchall()
        version_map = {migration.version: migration for migration in self.migrations}
        rolled_back: list[int] = []
        for row in rows:
            migration = version_map.get(row["version"])
            if migration is None:
                raise PersistenceError(f"No existe la migración {row['version']} para revertir.")
            self._rollback_migration(migration)
            rolled_back.append(migration.version)
        return rolled_back

    def status(self) -> list[dict[str, object]]:
        self._ensure_history_table()
        applied = self._applied_checksums()
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied,
            }
            for migration in self.migrations
        ]

    def _ensure_history_table(self) -> None:
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )

    def _applied_checksums(self) -> dict[int, str]:
        rows = self.connection.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {row["version"]: row["checksum"] for row in rows}

    def _apply_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.up_sql.read_text(encoding="utf-8")
        applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        logger.info("Aplicando migración %04d_%s", migration.version, migration.name)
        # executescript confirma cualquier transacción pendiente, así que el
        # script y su registro en el historial viajan juntos en un solo bloque.
        self.connection.executescript(
            "BEGIN;\n"
            f"{sql_script}\n"
            "INSERT INTO schema_migrations (version, name, checksum, applied_at) "
            f"VALUES ({migration.version}, '{migration.name}', '{migration.checksum()}', '{applied_at}');\n"
            f"PRAGMA user_version = {migration.version};\n"
            "COMMIT;"
        )

    def _rollback_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.down_sql.read_text(encoding="utf-8")
        logger.info("Revirtiendo migración %04d_%s", migration.version, migration.name)
        self.connection.executescript(
            "BEGIN;\n"
            f"{sql_script}\n"
            f"DELETE FROM schema_migrations WHERE version = {migration.version};\n"
            "COMMIT;"
        )
        previous = self.connection.execute(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
        ).fetchone()["version"]
        self.connection.execute(f"PRAGMA user_version = {int(previous)}")

    def _discover_migrations(self) -> list[MigrationDefinition]:
        definitions: list[MigrationDefinition] = []
        for up_file in sorted(self.migrations_dir.glob("*.up.sql")):
            stem = up_file.name[: -len(".up.sql")]
            version_text, name = stem.split("_", maxsplit=1)
            down_file = self.migrations_dir / f"{stem}.down.sql"
            if not down_file.exists():
                raise FileNotFoundError(f"Missing down migration for {up_file.name}: {down_file}")
            definitions.append(
                MigrationDefinition(
                    version=int(version_text),
                    name=name,
                    up_sql=up_file,
                    down_sql=down_file,
                )
            )
        return definitions


def run_migrations(connection: sqlite3.Connection) -> None:
    MigrationRunner(connection).apply_all()


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gestiona migraciones SQLite de MyWarranties")
    parser.add_argument("command", choices=["up", "down", "status"], help="Operación a ejecutar")
    parser.add_argument("--db", default=str(resolve_db_path()), help="Ruta al archivo SQLite")
    parser.add_argument("--steps", type=int, default=1, help="Número de migraciones a revertir")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging(resolve_log_dir())
    args = build_cli().parse_args(argv)

    db_path = Path(args.db)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(db_path, isolation_level=None)
    try:
        runner = MigrationRunner(connection)
        if args.command == "up":
            applied = runner.apply_all()
            logger.info("Migraciones aplicadas", extra={"extra": {"command": "up", "versions": applied}})
        elif args.command == "down":
            rolled_back = runner.rollback(args.steps)
            logger.info("Migraciones revertidas", extra={"extra": {"command": "down", "versions": rolled_back}})
        else:
            for item in runner.status():
                marker = "[x]" if item["applied"] else "[ ]"
                logger.info("Estado de migración %s %04d %s", marker, item["version"], item["name"])
    finally:
        connection.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
