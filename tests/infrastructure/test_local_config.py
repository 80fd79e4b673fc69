from __future__ import annotations

import json
from pathlib import Path

import pytest

from mywarranties.core.errors import ValidationError
from mywarranties.domain.models import ConflictPolicy, SyncConfig
from mywarranties.infrastructure.local_config import LEAD_TIME_ENV, SYNC_INTERVAL_ENV, SyncConfigStore


def _write(tmp_path: Path, payload: dict) -> None:
    (tmp_path / "config.json").write_text(json.dumps(payload), encoding="utf-8")


def test_load_devuelve_none_si_no_existe_config(tmp_path: Path) -> None:
    assert SyncConfigStore(base_dir=tmp_path).load() is None


def test_load_devuelve_none_con_json_invalido(tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text("{ invalido", encoding="utf-8")

    assert SyncConfigStore(base_dir=tmp_path).load() is None


def test_load_sin_owner_devuelve_none(tmp_path: Path) -> None:
    _write(tmp_path, {"spreadsheet_id": "sheet-1"})

    assert SyncConfigStore(base_dir=tmp_path).load() is None


def test_load_aplica_valores_por_defecto_y_persiste_device_id(tmp_path: Path) -> None:
    _write(tmp_path, {"spreadsheet_id": "sheet-1", "owner_id": "owner-1"})

    config = SyncConfigStore(base_dir=tmp_path).load()

    assert config is not None
    assert config.lead_time_days == 30
    assert config.sync_interval_minutes == 15
    assert config.conflict_policy == ConflictPolicy.REMOTE_WINS
    assert config.credentials_path == str(tmp_path / "secrets" / "credentials.json")
    persisted = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert persisted["device_id"] == config.device_id
    assert config.device_id


def test_variables_de_entorno_sobrescriben(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write(tmp_path, {"spreadsheet_id": "sheet-1", "owner_id": "owner-1", "device_id": "d", "lead_time_days": 7})
    monkeypatch.setenv(LEAD_TIME_ENV, "3")
    monkeypatch.setenv(SYNC_INTERVAL_ENV, "no-numero")

    config = SyncConfigStore(base_dir=tmp_path).load()

    assert config.lead_time_days == 3
    assert config.sync_interval_minutes == 15


@pytest.mark.parametrize(
    "extra",
    [{"lead_time_days": 0}, {"sync_interval_minutes": 0}, {"conflict_policy": "local_wins"}],
)
def test_valores_invalidos_lanzan_validation_error(tmp_path: Path, extra: dict) -> None:
    _write(tmp_path, {"spreadsheet_id": "sheet-1", "owner_id": "owner-1", "device_id": "d", **extra})

    with pytest.raises(ValidationError):
        SyncConfigStore(base_dir=tmp_path).load()


def test_save_y_load_conservan_la_configuracion(tmp_path: Path) -> None:
    store = SyncConfigStore(base_dir=tmp_path)
    saved = store.save(
        SyncConfig(
            spreadsheet_id="sheet-1",
            credentials_path="/secrets/cred.json",
            owner_id="owner-1",
            lead_time_days=10,
            conflict_policy=ConflictPolicy.SURFACE,
        )
    )

    assert saved.device_id
    assert store.load() == saved
