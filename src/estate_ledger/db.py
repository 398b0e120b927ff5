# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Database layer for Estate Ledger.

This module provides the low-level accessors used to persist record
snapshots in SQLite. It is responsible for:

- Initializing the database schema.
- Importing a whole snapshot (CSV directory, manual batch) in one
  transaction, tracked as an import batch.
- Loading the persisted records back into an immutable Snapshot.
- Persisting the change sets committed by the record store
  (SqliteBackend), so that a payout batch is written all-or-nothing.

------------------------------------------------------------------------------
Schema Overview
------------------------------------------------------------------------------

1) import_batches
   One row per import, representing the origin of a set of records.

   Columns:
   - id             INTEGER PRIMARY KEY AUTOINCREMENT
   - created_at     TEXT    NOT NULL (ISO datetime, UTC)
   - source_type    TEXT    NOT NULL  -- "csv" | "manual" | "api"
   - source_label   TEXT    NOT NULL  -- directory path, connector name, etc.
   - rows_inserted  INTEGER NOT NULL
   - notes          TEXT

2) One table per record kind
   categories, contacts, accounts, buildings, properties, projects,
   rental_agreements, project_agreements, bills, invoices, transactions.

   Columns are derived from the record dataclasses (models.py):
   - seq            INTEGER PRIMARY KEY AUTOINCREMENT  -- insertion order
   - id             TEXT    NOT NULL UNIQUE
   - <amount>_cents INTEGER  for every amount field (amount, paid_amount,
                             balance, broker_fee, rebate_amount,
                             security_deposit), signed integer cents
   - <field>        TEXT     for every other field (enum values, ISO dates)

   ``seq`` preserves insertion order across save / load, which is the order
   used to break ties in ledgers. Re-importing a record with an existing id
   updates it in place and keeps its position.

------------------------------------------------------------------------------
SQLite Notes
------------------------------------------------------------------------------

- All timestamps are stored as ISO-8601 text (UTC).
- References between records are not enforced by foreign keys: dangling
  references are a data-quality finding (see resolver.dangling_references),
  not a storage error.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import pandas as pd
import structlog

from .models import (
    AMOUNT_FIELDS,
    RECORD_KINDS,
    Snapshot,
    record_from_mapping,
    record_to_mapping,
)
from .store import ChangeSet

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Estate Ledger.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


@dataclass(frozen=True)
class ImportStats:
    """
    Summary of an import of records into the database.

    Attributes
    ----------
    batch_id:
        Identifier of the batch row in `import_batches`.
    rows_inserted:
        Number of records written (inserted or updated), all kinds included.
    per_kind:
        Number of records written per record kind.
    """

    batch_id: int
    rows_inserted: int
    per_kind: dict[str, int]


SourceType = Literal["csv", "manual", "api"]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection.

    The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    return sqlite3.connect(cfg.path)


def _column(field_name: str) -> str:
    return f"{field_name}_cents" if field_name in AMOUNT_FIELDS else field_name


def _columns(kind: str) -> list[str]:
    """Ordered column names (without seq) of the table storing ``kind``."""
    return [_column(f.name) for f in fields(RECORD_KINDS[kind])]


def _now_utc_iso() -> str:
    """Return the current UTC datetime as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables if they do not exist yet.

    This function is idempotent and can be called multiple times safely.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_batches (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at    TEXT    NOT NULL,
            source_type   TEXT    NOT NULL,
            source_label  TEXT    NOT NULL,
            rows_inserted INTEGER NOT NULL DEFAULT 0,
            notes         TEXT
        );
        """
    )

    for kind in RECORD_KINDS:
        cols = []
        for name in _columns(kind):
            if name == "id":
                cols.append("id TEXT NOT NULL UNIQUE")
            elif name.endswith("_cents"):
                cols.append(f"{name} INTEGER")
            else:
                cols.append(f"{name} TEXT")
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {kind} ("
            "seq INTEGER PRIMARY KEY AUTOINCREMENT, " + ", ".join(cols) + ");"
        )

    conn.commit()


def _to_row(kind: str, record: Any) -> tuple:
    """Flatten a record into a tuple matching ``_columns(kind)``."""
    data = record_to_mapping(record)
    row = []
    for f in fields(RECORD_KINDS[kind]):
        value = data[f.name]
        if f.name in AMOUNT_FIELDS and value is not None:
            value = int(round(float(value) * 100))
        elif isinstance(value, bool):
            value = "1" if value else "0"
        row.append(value)
    return tuple(row)


def _upsert(conn: sqlite3.Connection, kind: str, records: Iterable[Any]) -> int:
    """Insert or update records of one kind. Returns the number written."""
    cols = _columns(kind)
    placeholders = ", ".join("?" for _ in cols)
    updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != "id")
    sql = (
        f"INSERT INTO {kind} ({', '.join(cols)}) VALUES ({placeholders}) "
        f"ON CONFLICT(id) DO UPDATE SET {updates};"
    )
    rows = [_to_row(kind, r) for r in records]
    conn.executemany(sql, rows)
    return len(rows)


def _from_row(kind: str, row: tuple) -> Any:
    data: dict[str, Any] = {}
    for f, value in zip(fields(RECORD_KINDS[kind]), row):
        if f.name in AMOUNT_FIELDS and value is not None:
            value = value / 100.0
        data[f.name] = value
    return record_from_mapping(RECORD_KINDS[kind], data)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def init_database(cfg: DatabaseConfig) -> None:
    """
    Initialize the database schema if needed.

    - Creates the SQLite file (and its parent directory) if it does not exist.
    - Creates the import_batches table and one table per record kind.
    - This function is idempotent: calling it multiple times is safe.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    _ensure_sqlite(cfg)
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(cfg)
    try:
        _create_schema_if_needed(conn)
    finally:
        conn.close()


def save_snapshot(
    cfg: DatabaseConfig,
    snapshot: Snapshot,
    *,
    source_type: SourceType = "csv",
    source_label: str = "",
    notes: str | None = None,
) -> ImportStats:
    """
    Import every record of ``snapshot`` in a single SQLite transaction.

    Records whose id already exists are updated in place. The import is
    recorded in `import_batches`.

    Returns
    -------
    ImportStats
        Batch id and number of records written.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        with conn:
            cur = conn.execute(
                """
                INSERT INTO import_batches
                    (created_at, source_type, source_label, rows_inserted, notes)
                VALUES (?, ?, ?, 0, ?);
                """,
                (_now_utc_iso(), source_type, source_label, notes),
            )
            batch_id = int(cur.lastrowid)

            per_kind = {
                kind: _upsert(conn, kind, getattr(snapshot, kind))
                for kind in RECORD_KINDS
            }
            total = sum(per_kind.values())
            conn.execute(
                "UPDATE import_batches SET rows_inserted = ? WHERE id = ?;",
                (total, batch_id),
            )
    finally:
        conn.close()

    logger.info(
        "snapshot_imported",
        batch_id=batch_id,
        rows=total,
        source_type=source_type,
        source_label=source_label,
    )
    return ImportStats(batch_id=batch_id, rows_inserted=total, per_kind=per_kind)


def load_snapshot(cfg: DatabaseConfig) -> Snapshot:
    """
    Load every persisted record into a Snapshot, in insertion order.

    Amounts are reconstructed from integer cents.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        collections: dict[str, list[Any]] = {}
        for kind in RECORD_KINDS:
            cur = conn.execute(
                f"SELECT {', '.join(_columns(kind))} FROM {kind} ORDER BY seq;"
            )
            collections[kind] = [_from_row(kind, row) for row in cur.fetchall()]
    finally:
        conn.close()

    return Snapshot.build(**collections)


def has_records(cfg: DatabaseConfig) -> bool:
    """Return True if at least one transaction, bill or invoice is stored."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        for kind in ("transactions", "bills", "invoices"):
            if conn.execute(f"SELECT 1 FROM {kind} LIMIT 1;").fetchone():
                return True
        return False
    finally:
        conn.close()


def list_import_batches(cfg: DatabaseConfig) -> pd.DataFrame:
    """
    Return the list of import batches stored in the database.

    Columns:
    - id
    - created_at
    - source_type
    - source_label
    - rows_inserted
    - notes
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        return pd.read_sql_query(
            """
            SELECT id, created_at, source_type, source_label, rows_inserted, notes
              FROM import_batches
             ORDER BY id;
            """,
            conn,
        )
    finally:
        conn.close()


class SqliteBackend:
    """
    Persistence backend of the record store.

    ``commit`` writes one ChangeSet (upserts then deletes) inside a single
    SQLite transaction: either every change is written or, on error, none is
    and the exception propagates so that the store keeps its old snapshot.
    """

    def __init__(self, cfg: DatabaseConfig):
        self.cfg = cfg
        init_database(cfg)

    def commit(self, changes: ChangeSet) -> None:
        conn = _connect(self.cfg)
        try:
            with conn:
                for kind, records in changes.upserts.items():
                    _upsert(conn, kind, records)
                for kind, ids in changes.deletes.items():
                    conn.executemany(
                        f"DELETE FROM {kind} WHERE id = ?;", [(i,) for i in ids]
                    )
        finally:
            conn.close()

    def load(self) -> Snapshot:
        return load_snapshot(self.cfg)
