"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'paused', 'completed', 'archived')),
    total_tasks INTEGER DEFAULT 0,
    completed_tasks INTEGER DEFAULT 0,
    progress REAL DEFAULT 0,
    pending_stock INTEGER DEFAULT 0,
    critical_items INTEGER DEFAULT 0,
    pending_decisions INTEGER DEFAULT 0,
    stats_synced_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'active', 'review', 'done')),
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high', 'critical')),
    assignee TEXT,
    xp_reward INTEGER DEFAULT 50,
    delayed INTEGER DEFAULT 0,
    on_hold INTEGER DEFAULT 0,
    emergency INTEGER DEFAULT 0,
    delay_reason TEXT,
    completed_by TEXT,
    version INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS experience_accounts (
    user_id TEXT PRIMARY KEY,
    display_name TEXT DEFAULT '',
    role TEXT DEFAULT 'site_super',
    experience INTEGER DEFAULT 0,
    level INTEGER DEFAULT 1,
    version INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS inventory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_name TEXT NOT NULL UNIQUE,
    quantity REAL DEFAULT 0,
    unit TEXT DEFAULT '',
    min_level REAL DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS material_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    item_name TEXT NOT NULL,
    quantity TEXT NOT NULL,
    unit TEXT DEFAULT '',
    status TEXT DEFAULT 'requested'
        CHECK (status IN ('requested', 'approved', 'rejected', 'ordered', 'delivered')),
    related_work_item_id TEXT REFERENCES work_items(id),
    requested_by TEXT,
    stock_deducted INTEGER DEFAULT 0,
    deducted_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS activity_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL,
    metadata TEXT DEFAULT '{}',
    actor_id TEXT DEFAULT 'system',
    is_important INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    question TEXT NOT NULL,
    status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'answered')),
    raised_by TEXT,
    work_item_id TEXT REFERENCES work_items(id),
    answer TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    answered_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_work_items_project ON work_items(project_id, status);
CREATE INDEX IF NOT EXISTS idx_requests_work_item ON material_requests(related_work_item_id, status);
CREATE INDEX IF NOT EXISTS idx_activity_project ON activity_records(project_id, created_at);
"""

APPEND_ONLY_SCHEMA = """
CREATE TRIGGER IF NOT EXISTS activity_records_no_update BEFORE UPDATE ON activity_records BEGIN
    SELECT RAISE(ABORT, 'activity_records is append-only');
END;

CREATE TRIGGER IF NOT EXISTS activity_records_no_delete BEFORE DELETE ON activity_records BEGIN
    SELECT RAISE(ABORT, 'activity_records is append-only');
END;
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.executescript(APPEND_ONLY_SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
