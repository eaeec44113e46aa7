"""Work item operations."""

import logging
import re
import sqlite3
from datetime import datetime

from site_ledger.core import activity as activity_mod
from site_ledger.core import stats as stats_mod
from site_ledger.db import store
from site_ledger.db.models import PRIORITIES, WORK_ITEM_STATUSES, WorkItem

logger = logging.getLogger(__name__)


class AlreadyCompleted(store.LedgerError):
    """Raised when a work item that is already done is completed again."""


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique work item ID from a slug, appending a number if needed."""
    base_slug = base_slug or "item"
    existing = db.execute(
        "SELECT id FROM work_items WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM work_items WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_work_item(
    db: sqlite3.Connection,
    title: str,
    project_id: str,
    description: str = "",
    priority: str = "medium",
    assignee: str | None = None,
    xp_reward: int = 50,
    emergency: bool = False,
) -> WorkItem:
    """Create a work item and bump the project's counters."""
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    item_id = _unique_id(db, slugify(title))

    db.execute(
        """INSERT INTO work_items
           (id, project_id, title, description, priority, assignee, xp_reward, emergency)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (item_id, project_id, title, description, priority, assignee, xp_reward, int(emergency)),
    )
    db.commit()

    stats_mod.increment_stat(db, project_id, "total_tasks", 1)
    if priority == "critical":
        stats_mod.increment_stat(db, project_id, "critical_items", 1)
    return get_work_item(db, item_id)


def get_work_item(db: sqlite3.Connection, item_id: str) -> WorkItem | None:
    row = db.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
    if not row:
        return None
    return _row_to_work_item(row)


def list_work_items(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    assignee: str | None = None,
) -> list[WorkItem]:
    """List work items with optional filters, most urgent first."""
    query = "SELECT * FROM work_items WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if assignee:
        query += " AND assignee = ?"
        params.append(assignee)

    query += (
        " ORDER BY CASE priority WHEN 'critical' THEN 0 WHEN 'high' THEN 1"
        " WHEN 'medium' THEN 2 ELSE 3 END, created_at ASC, id ASC"
    )
    rows = db.execute(query, params).fetchall()
    return [_row_to_work_item(r) for r in rows]


def update_status(
    db: sqlite3.Connection,
    item_id: str,
    status: str,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
) -> WorkItem:
    """Move a work item between the non-terminal statuses.

    Completion is a separate, checked transition (``mark_done``), and a done
    item cannot be reopened here.
    """
    if status not in WORK_ITEM_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    if status == "done":
        raise ValueError("Use the completion engine to mark a work item done")

    def _apply(doc: dict) -> dict:
        if doc["status"] == "done":
            raise AlreadyCompleted(f"Work item {item_id} is already done")
        return {"status": status}

    doc = store.run_transaction(db, "work_items", item_id, _apply, max_retries=max_retries)
    return _row_to_work_item(doc)


def mark_done(
    db: sqlite3.Connection,
    item_id: str,
    actor_id: str | None,
    project_id: str | None = None,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
    backoff: float = store.DEFAULT_BACKOFF,
) -> WorkItem:
    """One-way transition to ``done``, recording when and by whom.

    Raises NotFound (also when the item belongs to another project than
    ``project_id``), AlreadyCompleted or TransactionConflict; on any of them
    nothing was written.
    """

    def _apply(doc: dict) -> dict:
        if project_id is not None and doc["project_id"] != project_id:
            raise store.NotFound(f"Work item {item_id} is not part of project {project_id}")
        if doc["status"] == "done":
            raise AlreadyCompleted(f"Work item {item_id} is already done")
        return {
            "status": "done",
            "completed_at": datetime.now().isoformat(),
            "completed_by": actor_id,
        }

    doc = store.run_transaction(
        db, "work_items", item_id, _apply, max_retries=max_retries, backoff=backoff
    )
    return _row_to_work_item(doc)


def flag_delay(
    db: sqlite3.Connection,
    item_id: str,
    reason: str,
    actor_id: str | None = None,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
) -> WorkItem:
    """Flag a work item as delayed and post an incident to the feed."""

    def _apply(doc: dict) -> dict:
        return {"delayed": 1, "delay_reason": reason}

    item = _row_to_work_item(
        store.run_transaction(db, "work_items", item_id, _apply, max_retries=max_retries)
    )
    activity_mod.log_activity(
        db,
        item.project_id,
        "incident",
        f"DELAY: {item.title} - {reason}",
        {"work_item_id": item.id, "severity": "high", "reason": reason},
        actor_id,
    )
    return item


def set_hold(
    db: sqlite3.Connection,
    item_id: str,
    on_hold: bool,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
) -> WorkItem:
    doc = store.run_transaction(
        db, "work_items", item_id, lambda _: {"on_hold": int(on_hold)}, max_retries=max_retries
    )
    return _row_to_work_item(doc)


def _row_to_work_item(row) -> WorkItem:
    return WorkItem(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"],
        assignee=row["assignee"],
        xp_reward=int(row["xp_reward"] or 0),
        delayed=bool(row["delayed"]),
        on_hold=bool(row["on_hold"]),
        emergency=bool(row["emergency"]),
        delay_reason=row["delay_reason"],
        completed_by=row["completed_by"],
        version=row["version"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
