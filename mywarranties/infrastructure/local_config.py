from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from mywarranties.bootstrap.settings import resolve_appdata_dir
from mywarranties.core.errors import ValidationError
from mywarranties.domain.models import ConflictPolicy, SyncConfig
from mywarranties.domain.ports import SyncConfigStorePort

logger = logging.getLogger(__name__)

LEAD_TIME_ENV = "MYWARRANTIES_LEAD_TIME_DAYS"
SYNC_INTERVAL_ENV = "MYWARRANTIES_SYNC_INTERVAL_MINUTES"


def _int_override(name: str, current: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return current
    try:
        return int(raw)
    except ValueError:
        logger.warning("Valor no numérico en %s=%r; se mantiene %s", name, raw, current)
        return current


class SyncConfigStore(SyncConfigStorePort):
    """``config.json`` en el directorio de datos de la aplicación."""

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"
        self._credentials_path = self._base_dir / "secrets" / "credentials.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncConfig | None:
        if not self._config_path.exists():
            return None
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("No se pudo leer config.json: %s", exc)
            return None
        spreadsheet_id = str(payload.get("spreadsheet_id", "")).strip()
        credentials_path = str(payload.get("credentials_path", "")).strip() or str(self._credentials_path)
        owner_id = str(payload.get("owner_id", "")).strip()
        device_id = str(payload.get("device_id", "")).strip()
        if not device_id:
            device_id = self._generate_device_id()
            payload["device_id"] = device_id
            self._write_payload(payload)
        if not spreadsheet_id or not owner_id:
            return None
        try:
            return SyncConfig(
                spreadsheet_id=spreadsheet_id,
                credentials_path=credentials_path,
                owner_id=owner_id,
                device_id=device_id,
                lead_time_days=_int_override(LEAD_TIME_ENV, int(payload.get("lead_time_days", 30))),
                sync_interval_minutes=_int_override(SYNC_INTERVAL_ENV, int(payload.get("sync_interval_minutes", 15))),
                conflict_policy=ConflictPolicy(payload.get("conflict_policy", ConflictPolicy.REMOTE_WINS.value)),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"config.json inválido: {exc}") from exc

    def save(self, config: SyncConfig) -> SyncConfig:
        saved = SyncConfig(
            spreadsheet_id=config.spreadsheet_id,
            credentials_path=config.credentials_path,
            owner_id=config.owner_id,
            device_id=config.device_id or self._generate_device_id(),
            lead_time_days=config.lead_time_days,
            sync_interval_minutes=config.sync_interval_minutes,
            conflict_policy=ConflictPolicy(config.conflict_policy),
        )
        self._write_payload(
            {
                "spreadsheet_id": saved.spreadsheet_id,
                "credentials_path": saved.credentials_path,
                "owner_id": saved.owner_id,
                "device_id": saved.device_id,
                "lead_time_days": saved.lead_time_days,
                "sync_interval_minutes": saved.sync_interval_minutes,
                "conflict_policy": saved.conflict_policy.value,
            }
        )
        return saved

    def credentials_path(self) -> Path:
        return self._credentials_path

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())
