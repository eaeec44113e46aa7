"""Requests for information (RFIs) raised from site."""

import sqlite3
from datetime import datetime

from site_ledger.core import activity as activity_mod
from site_ledger.core import stats as stats_mod
from site_ledger.db import store
from site_ledger.db.models import Decision


def raise_decision(
    db: sqlite3.Connection,
    project_id: str,
    question: str,
    raised_by: str | None = None,
    work_item_id: str | None = None,
) -> Decision:
    """Open a pending decision and post it to the feed."""
    decision_id = store.append(
        db,
        "decisions",
        {
            "project_id": project_id,
            "question": question,
            "raised_by": raised_by,
            "work_item_id": work_item_id,
        },
    )
    stats_mod.increment_stat(db, project_id, "pending_decisions", 1)
    activity_mod.log_activity(
        db,
        project_id,
        "decision",
        f"RFI Raised: {question}",
        {"decision_id": decision_id, "work_item_id": work_item_id},
        raised_by,
    )
    return get_decision(db, decision_id)


def answer_decision(db: sqlite3.Connection, decision_id: int, answer: str) -> Decision:
    """Record an answer and resync the project's pending count."""
    decision = get_decision(db, decision_id)
    if decision is None:
        raise store.NotFound(f"decisions/{decision_id} does not exist")
    db.execute(
        "UPDATE decisions SET status = 'answered', answer = ?, answered_at = ? WHERE id = ?",
        (answer, datetime.now().isoformat(), decision_id),
    )
    db.commit()
    stats_mod.recalc_stats(db, decision.project_id)
    return get_decision(db, decision_id)


def get_decision(db: sqlite3.Connection, decision_id: int) -> Decision | None:
    row = db.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
    if not row:
        return None
    return _row_to_decision(row)


def list_decisions(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
) -> list[Decision]:
    query = "SELECT * FROM decisions WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY id"
    return [_row_to_decision(r) for r in db.execute(query, params).fetchall()]


def _row_to_decision(row: sqlite3.Row) -> Decision:
    return Decision(
        id=row["id"],
        project_id=row["project_id"],
        question=row["question"],
        status=row["status"],
        raised_by=row["raised_by"],
        work_item_id=row["work_item_id"],
        answer=row["answer"],
        created_at=_parse_dt(row["created_at"]),
        answered_at=_parse_dt(row["answered_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
