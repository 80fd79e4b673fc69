from __future__ import annotations

from datetime import timedelta

import pytest

from mywarranties.core.errors import RejectedError
from mywarranties.domain.models import content_snapshot
from mywarranties.infrastructure.sheets_remote_client import SheetsRemoteSyncClient
from mywarranties.infrastructure.sheets_rows import WARRANTIES_WORKSHEET, WARRANTY_HEADERS, parse_cursor
from tests.e2e_sync.fakes import T0, FakeClock, FakeSheetsClient, make_record, sync_config


@pytest.fixture
def sheets() -> FakeSheetsClient:
    return FakeSheetsClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(sheets: FakeSheetsClient, clock: FakeClock) -> SheetsRemoteSyncClient:
    return SheetsRemoteSyncClient(sheets, sync_config(), clock=clock)


def test_ensure_schema_crea_la_cabecera(client: SheetsRemoteSyncClient, sheets: FakeSheetsClient) -> None:
    headers = client.ensure_schema()

    assert headers == WARRANTY_HEADERS
    assert sheets.opened == [("/tmp/fake-credentials.json", "sheet-e2e")]


def test_push_asigna_revision_y_timestamp_de_servidor(
    client: SheetsRemoteSyncClient, sheets: FakeSheetsClient, clock: FakeClock
) -> None:
    clock.advance(seconds=30)

    ack = client.push(make_record())

    assert ack.applied is True
    assert ack.remote_updated_at == T0 + timedelta(seconds=30)
    [row] = sheets.rows()
    assert row["revision"] == "1"
    assert row["client_updated_at"] == "2024-03-01T09:00:00.000000Z"
    assert row["updated_at"] == "2024-03-01T09:00:30.000000Z"
    assert row["deleted"] == "0"


def test_push_repetido_es_idempotente(client: SheetsRemoteSyncClient, sheets: FakeSheetsClient) -> None:
    record = make_record()
    first = client.push(record)

    second = client.push(record)

    assert second.applied is False
    assert second.remote_updated_at == first.remote_updated_at
    assert len(sheets.rows()) == 1
    assert sheets.write_calls == 1


def test_push_actualiza_la_fila_existente_con_revision_nueva(
    client: SheetsRemoteSyncClient, sheets: FakeSheetsClient
) -> None:
    client.push(make_record("w-1"))
    client.push(make_record("w-2"))

    ack = client.push(make_record("w-1", product_name="Secadora", updated_at=T0 + timedelta(minutes=1)))

    assert ack.applied is True
    rows = {row["id"]: row for row in sheets.rows()}
    assert rows["w-1"]["product_name"] == "Secadora"
    assert rows["w-1"]["revision"] == "3"
    assert len(rows) == 2


def test_timestamp_de_servidor_nunca_retrocede(client: SheetsRemoteSyncClient) -> None:
    first = client.push(make_record(updated_at=T0 + timedelta(hours=1)))

    second = client.push(make_record(product_name="Otro", updated_at=T0 + timedelta(hours=1, seconds=1)))

    assert second.remote_updated_at > first.remote_updated_at


def test_push_de_otro_usuario_se_rechaza(client: SheetsRemoteSyncClient) -> None:
    with pytest.raises(RejectedError):
        client.push(make_record(owner_id="intruso"))


def test_fetch_changes_since_filtra_por_usuario_y_cursor(
    client: SheetsRemoteSyncClient, sheets: FakeSheetsClient
) -> None:
    client.push(make_record("w-1"))
    client.push(make_record("w-2"))
    otro = SheetsRemoteSyncClient(sheets, sync_config(owner_id="owner-2"), clock=FakeClock())
    otro.push(make_record("w-3", owner_id="owner-2"))

    changes, cursor = client.fetch_changes_since(None)
    assert [record.id for record in changes] == ["w-1", "w-2"]
    assert cursor == "2"

    changes, cursor = client.fetch_changes_since("1")
    assert [record.id for record in changes] == ["w-2"]
    assert cursor == "2"

    changes, cursor = client.fetch_changes_since("3")
    assert list(changes) == []
    assert cursor == "3"


def test_fetch_sin_cambios_conserva_el_cursor_de_entrada(client: SheetsRemoteSyncClient) -> None:
    changes, cursor = client.fetch_changes_since(None)

    assert list(changes) == []
    assert cursor is None


def test_filas_invalidas_se_ignoran(client: SheetsRemoteSyncClient, sheets: FakeSheetsClient) -> None:
    client.push(make_record("w-1"))
    sheets.grids[WARRANTIES_WORKSHEET].append(["w-roto", "owner-1", "X", "no-fecha", "", "", "", "", "0", "2"])

    changes, cursor = client.fetch_changes_since(None)

    assert [record.id for record in changes] == ["w-1"]
    assert cursor == "2"


def test_cursor_invalido() -> None:
    with pytest.raises(ValueError):
        parse_cursor("abc")


def test_cursor_corrupto_relee_desde_el_principio(client: SheetsRemoteSyncClient) -> None:
    client.push(make_record("w-1"))

    changes, cursor = client.fetch_changes_since("abc")

    assert [record.id for record in changes] == ["w-1"]
    assert cursor == "1"


def test_fila_con_expiracion_anterior_a_la_compra_se_ignora(
    client: SheetsRemoteSyncClient, sheets: FakeSheetsClient
) -> None:
    client.push(make_record("w-1"))
    sheets.grids[WARRANTIES_WORKSHEET].append(
        ["w-malo", "owner-1", "X", "2025-01-01", "2024-01-01", "", "2024-03-01T09:00:00.000000Z", "", "0", "2"]
    )

    changes, cursor = client.fetch_changes_since(None)

    assert [record.id for record in changes] == ["w-1"]
    assert cursor == "2"


@pytest.mark.parametrize("clock_offset", [timedelta(hours=-1), timedelta(hours=1)])
def test_push_y_fetch_conservan_todos_los_campos(
    sheets: FakeSheetsClient, clock_offset: timedelta
) -> None:
    client = SheetsRemoteSyncClient(sheets, sync_config(), clock=FakeClock(T0 + clock_offset))
    client.push(make_record("w-0"))
    record = make_record(
        "w-1",
        product_name="Portátil",
        receipt_ref="tickets/w-1.jpg",
        deleted=True,
        updated_at=T0 + timedelta(minutes=5),
    )

    ack = client.push(record)
    [fetched], cursor = client.fetch_changes_since("1")

    assert cursor == "2"
    assert content_snapshot(fetched) == content_snapshot(record)
    assert fetched.owner_id == "owner-1"
    assert fetched.receipt_ref == "tickets/w-1.jpg"
    assert fetched.deleted is True
    assert fetched.client_updated_at == record.updated_at
    assert fetched.updated_at == ack.remote_updated_at
    assert fetched.updated_at >= record.updated_at
    assert fetched.revision == 2
