"""Single-document store primitives.

The ledger only relies on what a document store guarantees: one document
can be read, modified and written back atomically (optimistic ``version``
check, retried on conflict), and a numeric field can be incremented
atomically. Nothing here spans two documents.
"""

import logging
import sqlite3
import time
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF = 0.05

# table -> primary key column; anything else is rejected before SQL is built
_KEYS = {
    "projects": "id",
    "work_items": "id",
    "experience_accounts": "user_id",
    "inventory": "id",
    "material_requests": "id",
    "activity_records": "id",
    "decisions": "id",
}


class LedgerError(Exception):
    """Base class for store failures."""


class NotFound(LedgerError):
    """Raised when a referenced document does not exist."""


class TransactionConflict(LedgerError):
    """Raised when an optimistic transaction exhausts its retries."""


def _key(table: str) -> str:
    try:
        return _KEYS[table]
    except KeyError:
        raise ValueError(f"Unknown collection: {table}") from None


def get_document(db: sqlite3.Connection, table: str, doc_id) -> dict | None:
    """Read one document as a plain dict."""
    row = db.execute(
        f"SELECT * FROM {table} WHERE {_key(table)} = ?", (doc_id,)
    ).fetchone()
    return dict(row) if row else None


def run_transaction(
    db: sqlite3.Connection,
    table: str,
    doc_id,
    mutate: Callable[[dict], Mapping[str, Any]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff: float = DEFAULT_BACKOFF,
) -> dict:
    """Atomic read-modify-write on a single versioned document.

    ``mutate`` receives the current document and returns the fields to
    write. The write only lands if the document's version is unchanged
    since the read; otherwise the whole read-modify-write is retried, up to
    ``max_retries`` attempts. Exceptions raised by ``mutate`` abort the
    transaction without a write. Returns the document as written.
    """
    key = _key(table)
    for attempt in range(1, max_retries + 1):
        current = get_document(db, table, doc_id)
        if current is None:
            raise NotFound(f"{table}/{doc_id} does not exist")

        try:
            updates = dict(mutate(dict(current)))
        except Exception:
            db.rollback()
            raise
        updates.pop(key, None)
        updates.pop("version", None)

        set_parts = [f"{k} = ?" for k in updates]
        set_parts.append("version = version + 1")
        set_parts.append("updated_at = datetime('now')")
        values = list(updates.values()) + [doc_id, current["version"]]
        cur = db.execute(
            f"UPDATE {table} SET {', '.join(set_parts)} WHERE {key} = ? AND version = ?",
            values,
        )
        if cur.rowcount == 1:
            db.commit()
            return get_document(db, table, doc_id)

        db.rollback()
        logger.debug(
            "Version conflict on %s/%s (attempt %d/%d)", table, doc_id, attempt, max_retries
        )
        if attempt < max_retries:
            time.sleep(backoff * attempt)

    raise TransactionConflict(
        f"{table}/{doc_id}: gave up after {max_retries} conflicting attempts"
    )


def increment(
    db: sqlite3.Connection,
    table: str,
    doc_id,
    deltas: Mapping[str, float],
    extra_sql: str = "",
) -> None:
    """Atomically add ``deltas`` to numeric fields of one document.

    ``extra_sql`` is appended to the SET clause, for fields derived from the
    incremented ones in the same statement.
    """
    if not deltas:
        return
    set_parts = [f"{k} = COALESCE({k}, 0) + ?" for k in deltas]
    if extra_sql:
        set_parts.append(extra_sql)
    values = list(deltas.values()) + [doc_id]
    cur = db.execute(
        f"UPDATE {table} SET {', '.join(set_parts)} WHERE {_key(table)} = ?",
        values,
    )
    if cur.rowcount == 0:
        db.rollback()
        raise NotFound(f"{table}/{doc_id} does not exist")
    db.commit()


def append(db: sqlite3.Connection, table: str, values: Mapping[str, Any]) -> int:
    """Insert a new document and return its row id."""
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    cur = db.execute(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
        list(values.values()),
    )
    db.commit()
    return cur.lastrowid


def count(db: sqlite3.Connection, table: str, where: str = "", params: tuple = ()) -> int:
    """Count documents matching a simple filter."""
    sql = f"SELECT COUNT(*) FROM {table}"
    if where:
        sql += f" WHERE {where}"
    return db.execute(sql, params).fetchone()[0]
