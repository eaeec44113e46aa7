"""Append-only activity log for the project feed and audit trail."""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from site_ledger.db import store
from site_ledger.db.models import ACTIVITY_TYPES, ActivityRecord

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def log_activity(
    db: sqlite3.Connection,
    project_id: str,
    activity_type: str,
    description: str,
    metadata: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> ActivityRecord:
    """Append one activity record. Records are never updated or deleted."""
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Invalid activity type: {activity_type}")
    metadata = dict(metadata or {})
    important = metadata.get("severity") in ("high", "critical")

    record_id = store.append(
        db,
        "activity_records",
        {
            "project_id": project_id,
            "type": activity_type,
            "description": description,
            "metadata": json.dumps(metadata, sort_keys=True, default=str),
            "actor_id": actor_id or SYSTEM_ACTOR,
            "is_important": int(important),
        },
    )
    logger.debug("Activity logged: %s #%d %s", project_id, record_id, activity_type)
    return get_activity(db, record_id)


def get_activity(db: sqlite3.Connection, record_id: int) -> ActivityRecord | None:
    row = db.execute(
        "SELECT * FROM activity_records WHERE id = ?", (record_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_record(row)


def list_activity(
    db: sqlite3.Connection,
    project_id: str,
    activity_type: str | None = None,
    limit: int = 50,
) -> list[ActivityRecord]:
    """Newest-first feed for a project."""
    query = "SELECT * FROM activity_records WHERE project_id = ?"
    params: list = [project_id]
    if activity_type:
        query += " AND type = ?"
        params.append(activity_type)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_record(r) for r in rows]


def _row_to_record(row: sqlite3.Row) -> ActivityRecord:
    return ActivityRecord(
        id=row["id"],
        project_id=row["project_id"],
        type=row["type"],
        description=row["description"],
        metadata=json.loads(row["metadata"] or "{}"),
        actor_id=row["actor_id"],
        is_important=bool(row["is_important"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
