"""Tests for the JSON API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from site_ledger.core import experience as experience_mod
from site_ledger.core import inventory as inventory_mod
from site_ledger.core import projects as projects_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.db.engine import init_db
from site_ledger.web.app import create_app


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"SL_DB_PATH": str(db_path), "SL_RETRY_BACKOFF": "0"}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        projects_mod.create_project(db, "demo", "Demo Project")
        experience_mod.create_account(db, "alice", "Alice")
        inventory_mod.add_inventory_item(db, "Cement", 100, "bags")
        work_items_mod.create_work_item(db, "Foundation", "demo", priority="critical")
        work_items_mod.create_work_item(db, "Landscaping", "demo", priority="low")
        inventory_mod.create_material_request(
            db, "demo", "Cement", "20", related_work_item_id="foundation", status="approved"
        )
        inventory_mod.create_material_request(
            db, "demo", "Granite", "4", related_work_item_id="foundation", status="approved"
        )
        db.close()

        client = TestClient(create_app())
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestProjectsAPI:
    def test_list_projects(self, web_env):
        resp = web_env.get("/api/projects")
        assert resp.status_code == 200
        assert resp.json()[0]["id"] == "demo"

    def test_get_project_with_stats(self, web_env):
        data = web_env.get("/api/projects/demo").json()
        assert data["stats"]["total_tasks"] == 2
        assert data["stats"]["critical_items"] == 1
        assert data["stats"]["pending_stock"] == 2

    def test_get_nonexistent_project(self, web_env):
        assert web_env.get("/api/projects/nope").status_code == 404

    def test_work_items(self, web_env):
        items = web_env.get("/api/projects/demo/work-items").json()
        assert [i["id"] for i in items] == ["foundation", "landscaping"]


class TestCompleteAPI:
    def test_complete_with_partial_failure(self, web_env):
        resp = web_env.post(
            "/api/projects/demo/work-items/foundation/complete", json={"actor_id": "alice"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["xp_awarded"] == 100
        assert data["failed_steps"] == ["inventory:2"]
        statuses = {s["item_name"]: s["status"] for s in data["settlement"]}
        assert statuses == {"Cement": "deducted", "Granite": "no_stock_record"}

        project = web_env.get("/api/projects/demo").json()
        assert project["stats"]["completed_tasks"] == 1
        assert project["stats"]["critical_items"] == 0

    def test_complete_twice_conflicts(self, web_env):
        url = "/api/projects/demo/work-items/landscaping/complete"
        assert web_env.post(url, json={"actor_id": "alice"}).status_code == 200
        assert web_env.post(url, json={"actor_id": "alice"}).status_code == 409

        board = web_env.get("/api/leaderboard").json()
        assert board[0]["experience"] == 50

    def test_complete_missing_item(self, web_env):
        resp = web_env.post("/api/projects/demo/work-items/ghost/complete", json={})
        assert resp.status_code == 404

    def test_complete_wrong_project(self, web_env):
        resp = web_env.post("/api/projects/other/work-items/foundation/complete", json={})
        assert resp.status_code == 404

    def test_invalid_body(self, web_env):
        resp = web_env.post(
            "/api/projects/demo/work-items/foundation/complete", content=b"{not json"
        )
        assert resp.status_code == 400


class TestStatsAPI:
    def test_recalc(self, web_env):
        resp = web_env.post("/api/projects/demo/stats/recalc")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_tasks"] == 2
        assert data["synced_at"] is not None

    def test_recalc_missing(self, web_env):
        assert web_env.post("/api/projects/nope/stats/recalc").status_code == 404

    def test_activity_feed(self, web_env):
        web_env.post("/api/projects/demo/work-items/foundation/complete", json={"actor_id": "alice"})
        feed = web_env.get("/api/projects/demo/activity").json()
        assert [r["type"] for r in feed] == ["stock", "task"]
