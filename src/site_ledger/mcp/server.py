"""MCP server exposing the completion engine and stats tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from site_ledger.config import Config, get_config
from site_ledger.core import activity as activity_mod
from site_ledger.core import inventory as inventory_mod
from site_ledger.core import projects as projects_mod
from site_ledger.core import stats as stats_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.core.completion import CompletionEngine
from site_ledger.db.engine import init_db
from site_ledger.db.store import LedgerError, NotFound


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("site-ledger", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Work Item Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def list_work_items(ctx: Context, project: str, status: str | None = None) -> list[dict]:
    """List work items in a project, optionally filtered by status (todo, active, review, done)."""
    app = _ctx(ctx)
    items = work_items_mod.list_work_items(app.db, project, status=status)
    return [
        {"id": i.id, "title": i.title, "status": i.status, "priority": i.priority}
        for i in items
    ]


@mcp.tool()
def complete_work_item(ctx: Context, work_item_id: str, project: str, actor_id: str | None = None) -> dict:
    """Mark a work item done, grant XP to the actor and deduct linked stock.

    The result lists any side effects that failed and need review.
    """
    app = _ctx(ctx)
    snapshot = work_items_mod.get_work_item(app.db, work_item_id)
    engine = CompletionEngine.from_config(app.db, app.config)
    try:
        result = engine.complete_work_item(work_item_id, project, actor_id, snapshot)
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return {
        "success": result.success,
        "failed_steps": result.failed_steps,
        "skipped_steps": result.skipped_steps,
        "xp_awarded": result.xp_awarded,
    }


@mcp.tool()
def reconcile_inventory(ctx: Context, work_item_id: str, project: str) -> list[dict] | dict:
    """Retry stock deduction for a completed work item's approved material requests.

    Requests already deducted are skipped.
    """
    app = _ctx(ctx)
    try:
        report = inventory_mod.reconcile_for_completed_item(
            app.db, project, work_item_id,
            max_retries=app.config.max_retries, backoff=app.config.retry_backoff,
        )
    except (LedgerError, ValueError) as e:
        return {"error": str(e)}
    return [
        {"request_id": o.request_id, "item": o.item_name, "status": o.status, "message": o.message}
        for o in report.outcomes
    ]


# ── Stats Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def get_project_stats(ctx: Context, project: str) -> dict:
    """Get a project's stats summary and any drift from the source rows."""
    app = _ctx(ctx)
    p = projects_mod.get_project(app.db, project)
    if not p:
        return {"error": f"Project not found: {project}"}
    drift = stats_mod.find_drift(app.db, project)
    return {
        "total_tasks": p.stats.total_tasks,
        "completed_tasks": p.stats.completed_tasks,
        "progress": round(p.stats.progress, 1),
        "pending_stock": p.stats.pending_stock,
        "critical_items": p.stats.critical_items,
        "pending_decisions": p.stats.pending_decisions,
        "drift": {k: {"stored": s, "actual": a} for k, (s, a) in drift.items()},
    }


@mcp.tool()
def recalc_stats(ctx: Context, project: str) -> dict:
    """Recompute a project's stats from the source rows."""
    app = _ctx(ctx)
    try:
        s = stats_mod.recalc_stats(app.db, project)
    except NotFound as e:
        return {"error": str(e)}
    return {"total_tasks": s.total_tasks, "completed_tasks": s.completed_tasks, "progress": s.progress}


@mcp.tool()
def list_activity(ctx: Context, project: str, limit: int = 20) -> list[dict]:
    """Recent activity feed for a project."""
    app = _ctx(ctx)
    return [
        {"type": r.type, "description": r.description, "actor": r.actor_id,
         "at": r.created_at.isoformat() if r.created_at else None}
        for r in activity_mod.list_activity(app.db, project, limit=limit)
    ]
