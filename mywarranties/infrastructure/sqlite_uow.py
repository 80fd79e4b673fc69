from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Iterator


@contextlib.contextmanager
def transaction(connection: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Transacción atómica por registro, anidable vía SAVEPOINT."""
    if connection.in_transaction:
        savepoint_name = f"sp_{uuid.uuid4().hex}"
        connection.execute(f"SAVEPOINT {savepoint_name}")
        try:
            yield connection
            connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
        except BaseException:
            connection.execute(f"ROLLBACK TO SAVEPOINT {savepoint_name}")
            connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
            raise
        return

    connection.execute("BEGIN IMMEDIATE")
    try:
        yield connection
        connection.execute("COMMIT")
    except BaseException:
        connection.execute("ROLLBACK")
        raise
