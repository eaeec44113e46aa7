"""Derived project statistics.

Two paths keep the summary on a project row current:

* ``increment_stat`` bumps one counter atomically. It is the fast path,
  called right after the state change it accounts for.
* ``recalc_stats`` recounts everything from the source rows and overwrites
  the summary. It repairs any drift the fast path left behind and is safe
  to run at any time.
"""

import logging
import sqlite3
from datetime import datetime

from site_ledger.core.projects import get_project
from site_ledger.db import store
from site_ledger.db.models import ProjectStats

logger = logging.getLogger(__name__)

STAT_FIELDS = (
    "total_tasks",
    "completed_tasks",
    "pending_stock",
    "critical_items",
    "pending_decisions",
)

# Names the dashboard uses for the same counters.
_ALIASES = {
    "totalTasks": "total_tasks",
    "completedTasks": "completed_tasks",
    "pendingStock": "pending_stock",
    "criticalHotfixes": "critical_items",
    "criticalItems": "critical_items",
    "pendingRFIs": "pending_decisions",
    "pendingDecisions": "pending_decisions",
}

_PROGRESS_SQL = (
    "progress = CASE WHEN total_tasks > 0 "
    "THEN completed_tasks * 100.0 / total_tasks ELSE 0 END"
)


def resolve_field(field_path: str) -> str:
    """Map ``stats.totalTasks``, ``totalTasks`` or ``total_tasks`` to a column."""
    name = field_path.removeprefix("stats.")
    name = _ALIASES.get(name, name)
    if name not in STAT_FIELDS:
        raise ValueError(f"Unknown stats field: {field_path}")
    return name


def increment_stat(
    db: sqlite3.Connection,
    project_id: str,
    field_path: str,
    delta: int,
) -> None:
    """Atomically add ``delta`` to one summary counter.

    Progress is re-derived in the same statement so it always matches the
    counters it is computed from.
    """
    column = resolve_field(field_path)
    store.increment(db, "projects", project_id, {column: delta}, extra_sql=_PROGRESS_SQL)
    logger.debug("stats %s.%s %+d", project_id, column, delta)


def compute_stats(db: sqlite3.Connection, project_id: str) -> ProjectStats:
    """Count every summary field from the authoritative rows."""
    total = store.count(db, "work_items", "project_id = ?", (project_id,))
    completed = store.count(
        db, "work_items", "project_id = ? AND status = 'done'", (project_id,)
    )
    pending_stock = store.count(
        db,
        "material_requests",
        "project_id = ? AND status IN ('approved', 'ordered')",
        (project_id,),
    )
    pending_decisions = store.count(
        db, "decisions", "project_id = ? AND status = 'pending'", (project_id,)
    )
    critical = store.count(
        db,
        "work_items",
        "project_id = ? AND priority = 'critical' AND status != 'done'",
        (project_id,),
    )
    progress = (completed / total * 100) if total > 0 else 0.0
    return ProjectStats(
        total_tasks=total,
        completed_tasks=completed,
        progress=progress,
        pending_stock=pending_stock,
        critical_items=critical,
        pending_decisions=pending_decisions,
    )


def recalc_stats(db: sqlite3.Connection, project_id: str) -> ProjectStats:
    """Recompute the summary from source counts and overwrite it wholesale."""
    if get_project(db, project_id) is None:
        raise store.NotFound(f"projects/{project_id} does not exist")

    stats = compute_stats(db, project_id)
    stats.synced_at = datetime.now()
    db.execute(
        """UPDATE projects
           SET total_tasks = ?, completed_tasks = ?, progress = ?, pending_stock = ?,
               critical_items = ?, pending_decisions = ?, stats_synced_at = ?
           WHERE id = ?""",
        (
            stats.total_tasks,
            stats.completed_tasks,
            stats.progress,
            stats.pending_stock,
            stats.critical_items,
            stats.pending_decisions,
            stats.synced_at.isoformat(),
            project_id,
        ),
    )
    db.commit()
    logger.info(
        "Stats synced for %s: total=%d completed=%d pending_stock=%d critical=%d decisions=%d",
        project_id,
        stats.total_tasks,
        stats.completed_tasks,
        stats.pending_stock,
        stats.critical_items,
        stats.pending_decisions,
    )
    return stats


def recalc_all_stats(db: sqlite3.Connection) -> dict[str, ProjectStats]:
    """Recompute the summary of every project."""
    project_ids = [r["id"] for r in db.execute("SELECT id FROM projects ORDER BY id").fetchall()]
    return {pid: recalc_stats(db, pid) for pid in project_ids}


def find_drift(db: sqlite3.Connection, project_id: str) -> dict[str, tuple[int, int]]:
    """Return ``{field: (stored, actual)}`` for counters that disagree with the source rows."""
    project = get_project(db, project_id)
    if project is None:
        raise store.NotFound(f"projects/{project_id} does not exist")
    actual = compute_stats(db, project_id)
    drift = {}
    for name in STAT_FIELDS:
        stored = getattr(project.stats, name)
        expected = getattr(actual, name)
        if stored != expected:
            drift[name] = (stored, expected)
    return drift
