"""JSON API over the site ledger."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from site_ledger.config import get_config
from site_ledger.core import activity as activity_mod
from site_ledger.core import experience as experience_mod
from site_ledger.core import projects as projects_mod
from site_ledger.core import stats as stats_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.core.completion import CompletionEngine, InvalidArgument
from site_ledger.db.engine import init_db
from site_ledger.db.store import NotFound, TransactionConflict


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
        if not project:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_project_work_items(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        items = work_items_mod.list_work_items(db, project_id, status=status_filter)
        return JSONResponse([_item_dict(i) for i in items])
    finally:
        db.close()


async def api_complete_work_item(request: Request):
    project_id = request.path_params["project_id"]
    item_id = request.path_params["item_id"]
    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    db = _get_db()
    try:
        snapshot = work_items_mod.get_work_item(db, item_id)
        engine = CompletionEngine.from_config(db, get_config())
        try:
            result = engine.complete_work_item(
                item_id, project_id, payload.get("actor_id"), snapshot
            )
        except InvalidArgument as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except NotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except (work_items_mod.AlreadyCompleted, TransactionConflict) as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse(_result_dict(result))
    finally:
        db.close()


async def api_recalc_stats(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        try:
            stats = stats_mod.recalc_stats(db, project_id)
        except NotFound:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse(_stats_dict(stats))
    finally:
        db.close()


async def api_project_activity(request: Request):
    project_id = request.path_params["project_id"]
    activity_type = request.query_params.get("type")
    limit = int(request.query_params.get("limit", 50))
    db = _get_db()
    try:
        records = activity_mod.list_activity(db, project_id, activity_type, limit)
        return JSONResponse([_activity_dict(r) for r in records])
    finally:
        db.close()


async def api_leaderboard(request: Request):
    limit = int(request.query_params.get("limit", 10))
    db = _get_db()
    try:
        accounts = experience_mod.list_leaderboard(db, limit)
        return JSONResponse([
            {
                "user_id": a.user_id,
                "display_name": a.display_name,
                "experience": a.experience,
                "level": a.level,
            }
            for a in accounts
        ])
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _stats_dict(s) -> dict:
    return {
        "total_tasks": s.total_tasks,
        "completed_tasks": s.completed_tasks,
        "progress": round(s.progress, 1),
        "pending_stock": s.pending_stock,
        "critical_items": s.critical_items,
        "pending_decisions": s.pending_decisions,
        "synced_at": s.synced_at.isoformat() if s.synced_at else None,
    }


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "status": p.status,
        "stats": _stats_dict(p.stats),
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _item_dict(i) -> dict:
    return {
        "id": i.id,
        "project_id": i.project_id,
        "title": i.title,
        "status": i.status,
        "priority": i.priority,
        "assignee": i.assignee,
        "delayed": i.delayed,
        "on_hold": i.on_hold,
        "emergency": i.emergency,
        "completed_by": i.completed_by,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "completed_at": i.completed_at.isoformat() if i.completed_at else None,
    }


def _result_dict(r) -> dict:
    settlement = None
    if r.settlement is not None:
        settlement = [
            {
                "request_id": o.request_id,
                "item_name": o.item_name,
                "status": o.status,
                "quantity": o.quantity,
                "message": o.message,
            }
            for o in r.settlement.outcomes
        ]
    return {
        "work_item_id": r.work_item_id,
        "project_id": r.project_id,
        "success": r.success,
        "failed_steps": r.failed_steps,
        "skipped_steps": r.skipped_steps,
        "xp_awarded": r.xp_awarded,
        "settlement": settlement,
    }


def _activity_dict(r) -> dict:
    return {
        "id": r.id,
        "type": r.type,
        "description": r.description,
        "metadata": r.metadata,
        "actor_id": r.actor_id,
        "is_important": r.is_important,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/work-items", api_project_work_items),
        Route(
            "/api/projects/{project_id}/work-items/{item_id}/complete",
            api_complete_work_item,
            methods=["POST"],
        ),
        Route("/api/projects/{project_id}/stats/recalc", api_recalc_stats, methods=["POST"]),
        Route("/api/projects/{project_id}/activity", api_project_activity),
        Route("/api/leaderboard", api_leaderboard),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
