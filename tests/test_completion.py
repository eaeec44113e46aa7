"""Tests for the work item completion engine."""

import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from site_ledger.config import Config
from site_ledger.core import activity as activity_mod
from site_ledger.core import experience as experience_mod
from site_ledger.core import inventory as inventory_mod
from site_ledger.core import projects as projects_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.core.completion import (
    CompletionEngine,
    InvalidArgument,
    complete_work_item,
    reward_for_priority,
)
from site_ledger.db import store
from site_ledger.db.engine import init_db


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "site", "Site")
        experience_mod.create_account(conn, "alice", "Alice")
        yield conn
        conn.close()


def _engine(db, **collaborators):
    return CompletionEngine(db, backoff=0, **collaborators)


class TestReward:
    @pytest.mark.parametrize(
        "priority,xp",
        [("critical", 100), ("high", 80), ("medium", 60), ("low", 50), (None, 60), ("weird", 50)],
    )
    def test_reward(self, priority, xp):
        assert reward_for_priority(priority) == xp


class TestPreconditions:
    @pytest.mark.parametrize("item_id,project_id", [("", "site"), ("x", ""), (None, "site")])
    def test_missing_ids(self, db, item_id, project_id):
        mark_done = MagicMock()
        with pytest.raises(InvalidArgument):
            _engine(db, mark_done=mark_done).complete_work_item(item_id, project_id, "alice")
        mark_done.assert_not_called()

    def test_invalid_argument_is_value_error(self):
        assert issubclass(InvalidArgument, ValueError)


class TestHappyPath:
    def test_full_completion(self, db):
        item = work_items_mod.create_work_item(db, "Foundation", "site", priority="critical")
        result = _engine(db).complete_work_item(item.id, "site", "alice", item)

        assert result.success is True
        assert result.fully_succeeded is True
        assert result.xp_awarded == 100
        assert work_items_mod.get_work_item(db, item.id).status == "done"

        account = experience_mod.get_account(db, "alice")
        assert account.experience == 100
        assert account.level == 1

        feed = activity_mod.list_activity(db, "site", "task")
        assert len(feed) == 1
        assert feed[0].metadata == {"work_item_id": "foundation", "priority": "critical", "xp_earned": 100}

        stats = projects_mod.get_project(db, "site").stats
        assert stats.completed_tasks == 1
        assert stats.critical_items == 0
        assert stats.progress == 100.0

    def test_low_priority_reward(self, db):
        item = work_items_mod.create_work_item(db, "Sweep", "site", priority="low")
        result = complete_work_item(db, item.id, "site", "alice", item)
        assert result.xp_awarded == 50
        assert experience_mod.get_account(db, "alice").experience == 50

    def test_dict_snapshot(self, db):
        work_items_mod.create_work_item(db, "Sweep", "site", priority="high")
        result = _engine(db).complete_work_item("sweep", "site", "alice", {"title": "Sweep", "priority": "high"})
        assert result.xp_awarded == 80

    def test_without_actor_skips_grant(self, db):
        item = work_items_mod.create_work_item(db, "Auto", "site")
        result = _engine(db).complete_work_item(item.id, "site", None, item)
        assert result.skipped_steps == ["experience"]
        assert result.fully_succeeded is True
        assert activity_mod.list_activity(db, "site", "task")[0].actor_id == "system"

    def test_from_config(self, db):
        engine = CompletionEngine.from_config(db, Config(max_retries=2, retry_backoff=0.0))
        assert engine.max_retries == 2
        assert engine.backoff == 0.0


class TestIdempotency:
    def test_second_completion_rejected(self, db):
        item = work_items_mod.create_work_item(db, "Roof", "site", priority="high")
        inventory_mod.add_inventory_item(db, "Tiles", 500)
        inventory_mod.create_material_request(
            db, "site", "Tiles", "100", related_work_item_id=item.id, status="approved"
        )
        engine = _engine(db)
        engine.complete_work_item(item.id, "site", "alice", item)

        with pytest.raises(work_items_mod.AlreadyCompleted):
            engine.complete_work_item(item.id, "site", "alice", item)

        assert experience_mod.get_account(db, "alice").experience == 80
        assert inventory_mod.get_inventory_item(db, "Tiles").quantity == 400
        assert len(activity_mod.list_activity(db, "site", "task")) == 1
        assert projects_mod.get_project(db, "site").stats.completed_tasks == 1


class TestPartialFailure:
    def test_mixed_settlement(self, db):
        item = work_items_mod.create_work_item(db, "Foundation", "site")
        inventory_mod.add_inventory_item(db, "Cement", 100, "bags")
        matched = inventory_mod.create_material_request(
            db, "site", "Cement", "20", related_work_item_id=item.id, status="approved"
        )
        unmatched = inventory_mod.create_material_request(
            db, "site", "Granite", "4", related_work_item_id=item.id, status="approved"
        )

        result = _engine(db).complete_work_item(item.id, "site", "alice", item)

        assert result.success is True
        assert result.fully_succeeded is False
        assert result.failed_steps == [f"inventory:{unmatched.id}"]
        assert inventory_mod.get_inventory_item(db, "Cement").quantity == 80
        assert inventory_mod.get_material_request(db, matched.id).stock_deducted is True
        assert inventory_mod.get_material_request(db, unmatched.id).stock_deducted is False
        assert [o.status for o in result.settlement.warnings] == ["no_stock_record"]
        assert experience_mod.get_account(db, "alice").experience == 60

    def test_missing_account_is_recoverable(self, db):
        item = work_items_mod.create_work_item(db, "Drainage", "site")
        result = _engine(db).complete_work_item(item.id, "site", "nobody", item)
        assert result.success is True
        assert result.failed_steps == ["experience"]
        assert result.xp_awarded == 0
        assert work_items_mod.get_work_item(db, item.id).status == "done"
        assert experience_mod.get_account(db, "nobody") is None
        assert len(activity_mod.list_activity(db, "site", "task")) == 1

    def test_each_best_effort_step_reported(self, db):
        item = work_items_mod.create_work_item(db, "Walls", "site")
        failing = MagicMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        result = _engine(
            db,
            grant_experience=failing,
            log_activity=failing,
            reconcile_inventory=failing,
            increment_stat=failing,
        ).complete_work_item(item.id, "site", "alice", item)

        assert result.success is True
        assert result.failed_steps == ["experience", "activity", "inventory", "stats"]
        assert work_items_mod.get_work_item(db, item.id).status == "done"

    def test_steps_run_in_order(self, db):
        item = work_items_mod.create_work_item(db, "Ordering", "site")
        calls = []

        def _recorder(name, inner):
            def _wrapped(*args, **kwargs):
                calls.append(name)
                return inner(*args, **kwargs)
            return _wrapped

        _engine(
            db,
            mark_done=_recorder("mark_done", work_items_mod.mark_done),
            grant_experience=_recorder("grant", experience_mod.grant_experience),
            log_activity=_recorder("activity", activity_mod.log_activity),
            reconcile_inventory=_recorder("inventory", inventory_mod.reconcile_inventory_for_work_item),
        ).complete_work_item(item.id, "site", "alice", item)
        assert calls == ["mark_done", "grant", "activity", "inventory"]


class TestFatalTransition:
    def test_conflict_exhaustion_touches_nothing(self, db):
        item = work_items_mod.create_work_item(db, "Foundation", "site", priority="critical")
        inventory_mod.add_inventory_item(db, "Cement", 100)
        req = inventory_mod.create_material_request(
            db, "site", "Cement", "20", related_work_item_id=item.id, status="approved"
        )
        stats_before = projects_mod.get_project(db, "site").stats
        activity_before = activity_mod.list_activity(db, "site")

        mark_done = MagicMock(side_effect=store.TransactionConflict("gave up"))
        grant = MagicMock()
        with pytest.raises(store.TransactionConflict):
            _engine(db, mark_done=mark_done, grant_experience=grant).complete_work_item(
                item.id, "site", "alice", item
            )

        grant.assert_not_called()
        assert experience_mod.get_account(db, "alice").experience == 0
        assert activity_mod.list_activity(db, "site") == activity_before
        assert inventory_mod.get_inventory_item(db, "Cement").quantity == 100
        assert inventory_mod.get_material_request(db, req.id).stock_deducted is False
        assert projects_mod.get_project(db, "site").stats == stats_before

    def test_real_conflict_through_store(self, db, monkeypatch):
        item = work_items_mod.create_work_item(db, "Contested", "site")
        original = store.get_document

        def _stale_read(conn, table, doc_id):
            doc = original(conn, table, doc_id)
            if table == "work_items" and doc is not None:
                doc["version"] -= 1
            return doc

        monkeypatch.setattr(store, "get_document", _stale_read)
        engine = CompletionEngine(db, max_retries=2, backoff=0)
        with pytest.raises(store.TransactionConflict):
            engine.complete_work_item(item.id, "site", "alice", item)
        monkeypatch.undo()

        assert work_items_mod.get_work_item(db, item.id).status == "todo"
        assert experience_mod.get_account(db, "alice").experience == 0

    def test_missing_work_item(self, db):
        with pytest.raises(store.NotFound):
            _engine(db).complete_work_item("ghost", "site", "alice")
        assert experience_mod.get_account(db, "alice").experience == 0
