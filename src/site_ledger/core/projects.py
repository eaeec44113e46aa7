"""Project management operations."""

import sqlite3
from datetime import datetime

from site_ledger.db.models import PROJECT_STATUSES, Project, ProjectStats


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    status: str = "active",
) -> Project:
    """Create a new project with an empty stats summary."""
    if status not in PROJECT_STATUSES:
        raise ValueError(f"Invalid project status: {status}")
    db.execute(
        "INSERT INTO projects (id, name, status) VALUES (?, ?, ?)",
        (project_id, name, status),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, id").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields. Stats are not writable here."""
    allowed = {"name", "status"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "status" in updates and updates["status"] not in PROJECT_STATUSES:
        raise ValueError(f"Invalid project status: {updates['status']}")
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        status=row["status"],
        stats=ProjectStats(
            total_tasks=int(row["total_tasks"] or 0),
            completed_tasks=int(row["completed_tasks"] or 0),
            progress=float(row["progress"] or 0),
            pending_stock=int(row["pending_stock"] or 0),
            critical_items=int(row["critical_items"] or 0),
            pending_decisions=int(row["pending_decisions"] or 0),
            synced_at=_parse_dt(row["stats_synced_at"]),
        ),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
