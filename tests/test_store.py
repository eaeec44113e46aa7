"""Tests for the single-document store primitives."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from site_ledger.core import projects as projects_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.db import store
from site_ledger.db.engine import init_db


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    conn = init_db(db_path)
    projects_mod.create_project(conn, "site", "Site")
    yield conn
    conn.close()


class TestRunTransaction:
    def test_applies_update_and_bumps_version(self, db):
        work_items_mod.create_work_item(db, "Pour slab", "site")
        doc = store.run_transaction(db, "work_items", "pour-slab", lambda d: {"status": "active"})
        assert doc["status"] == "active"
        assert doc["version"] == 1

    def test_missing_document(self, db):
        with pytest.raises(store.NotFound):
            store.run_transaction(db, "work_items", "ghost", lambda d: {"status": "active"})

    def test_mutate_error_aborts_without_write(self, db):
        work_items_mod.create_work_item(db, "Frame walls", "site")

        def _boom(doc):
            raise RuntimeError("no")

        with pytest.raises(RuntimeError):
            store.run_transaction(db, "work_items", "frame-walls", _boom)
        assert store.get_document(db, "work_items", "frame-walls")["version"] == 0

    def test_retries_after_concurrent_write(self, db, db_path):
        work_items_mod.create_work_item(db, "Roofing", "site")
        other = sqlite3.connect(str(db_path))
        calls = []

        def _apply(doc):
            calls.append(doc["version"])
            if len(calls) == 1:
                other.execute("UPDATE work_items SET version = version + 1 WHERE id = 'roofing'")
                other.commit()
            return {"status": "review"}

        doc = store.run_transaction(db, "work_items", "roofing", _apply, backoff=0)
        other.close()
        assert calls == [0, 1]
        assert doc["status"] == "review"
        assert doc["version"] == 2

    def test_conflict_exhaustion(self, db, db_path):
        work_items_mod.create_work_item(db, "Plumbing", "site")
        other = sqlite3.connect(str(db_path))

        def _always_conflict(doc):
            other.execute("UPDATE work_items SET version = version + 1 WHERE id = 'plumbing'")
            other.commit()
            return {"status": "active"}

        with pytest.raises(store.TransactionConflict):
            store.run_transaction(
                db, "work_items", "plumbing", _always_conflict, max_retries=3, backoff=0
            )
        other.close()
        assert store.get_document(db, "work_items", "plumbing")["status"] == "todo"

    def test_unknown_collection(self, db):
        with pytest.raises(ValueError, match="Unknown collection"):
            store.run_transaction(db, "users", "x", lambda d: {})


class TestIncrement:
    def test_increment(self, db):
        store.increment(db, "projects", "site", {"total_tasks": 3})
        store.increment(db, "projects", "site", {"total_tasks": -1})
        assert store.get_document(db, "projects", "site")["total_tasks"] == 2

    def test_increment_missing(self, db):
        with pytest.raises(store.NotFound):
            store.increment(db, "projects", "nope", {"total_tasks": 1})


class TestAppendOnly:
    def test_activity_cannot_be_updated(self, db):
        store.append(
            db, "activity_records",
            {"project_id": "site", "type": "task", "description": "x"},
        )
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE activity_records SET description = 'y'")
        db.rollback()


class TestInitDb:
    def test_reopen_keeps_data(self, db, db_path):
        work_items_mod.create_work_item(db, "Pour slab", "site")
        db.close()
        conn = init_db(db_path)
        try:
            cols = {r["name"] for r in conn.execute("PRAGMA table_info(work_items)")}
            assert "delay_reason" in cols
            assert store.get_document(conn, "work_items", "pour-slab")["title"] == "Pour slab"
        finally:
            conn.close()
