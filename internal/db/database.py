"""SQLite persistent state store for the migration control plane.

Stores:
  - Projects (source/target pairing, replication items, lifecycle state)
  - Blueprints (per-machine target launch specifications of managed projects)
  - Audit log (lifecycle transitions and workflow handoffs)

The database file defaults to 'drp.db' in the working directory.
Set DRP_DB_PATH env var to override.
"""

import json
import os
import sqlite3
import threading
import time
from typing import Optional

from internal.models.types import Blueprint, Project

_DB_PATH = os.environ.get("DRP_DB_PATH", "drp.db")
_local = threading.local()


def _get_conn() -> sqlite3.Connection:
    """Get a thread-local SQLite connection."""
    if not hasattr(_local, "conn") or _local.conn is None:
        _local.conn = sqlite3.connect(_DB_PATH, check_same_thread=False)
        _local.conn.row_factory = sqlite3.Row
        _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA foreign_keys=ON")
    return _local.conn


def init_db(db_path: Optional[str] = None):
    """Initialize the database schema. Safe to call multiple times."""
    if db_path:
        global _DB_PATH
        _DB_PATH = db_path
        # Reset thread-local connection
        if hasattr(_local, "conn") and _local.conn:
            _local.conn.close()
            _local.conn = None

    db_dir = os.path.dirname(os.path.abspath(_DB_PATH))
    os.makedirs(db_dir, exist_ok=True)

    conn = _get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS projects (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            kind        TEXT NOT NULL,
            state       TEXT NOT NULL DEFAULT 'UNINITIALIZED',
            data        TEXT NOT NULL DEFAULT '{}',
            created_at  REAL NOT NULL,
            updated_at  REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS blueprints (
            project_id  TEXT NOT NULL,
            machine_id  TEXT NOT NULL,
            data        TEXT NOT NULL DEFAULT '{}',
            version     INTEGER NOT NULL DEFAULT 1,
            updated_at  REAL NOT NULL,
            PRIMARY KEY (project_id, machine_id),
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp   REAL NOT NULL,
            project_id  TEXT,
            action      TEXT NOT NULL,
            from_state  TEXT,
            to_state    TEXT,
            detail      TEXT NOT NULL DEFAULT '{}',
            error       TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_audit_log_project ON audit_log(project_id);
        CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
    """)
    conn.commit()


# ── Projects ────────────────────────────────────────────────────────────────

def save_project(project: Project) -> Project:
    """Insert or update a project; stamps created_at/updated_at."""
    conn = _get_conn()
    now = time.time()
    if not project.created_at:
        project.created_at = now
    project.updated_at = now
    conn.execute(
        """INSERT INTO projects
           (id, name, kind, state, data, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               name = excluded.name,
               state = excluded.state,
               data = excluded.data,
               updated_at = excluded.updated_at""",
        (project.id, project.name, project.kind.value, project.state.value,
         json.dumps(project.to_dict()), project.created_at, project.updated_at),
    )
    conn.commit()
    return project


def get_project(project_id: str) -> Optional[Project]:
    conn = _get_conn()
    r = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not r:
        return None
    return _row_to_project(r)


def delete_project(project_id: str) -> bool:
    conn = _get_conn()
    cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    conn.commit()
    return cursor.rowcount > 0


def _row_to_project(r) -> Project:
    data = json.loads(r["data"])
    # Column values are authoritative for fields updated in place
    data["state"] = r["state"]
    data["updatedAt"] = r["updated_at"]
    return Project.from_dict(data)


# ── Blueprints ──────────────────────────────────────────────────────────────

def save_blueprints(blueprints: list[Blueprint]):
    """Upsert a batch of blueprints in one transaction, bumping each version."""
    conn = _get_conn()
    now = time.time()
    with conn:
        for bp in blueprints:
            bp.version += 1
            conn.execute(
                """INSERT INTO blueprints (project_id, machine_id, data, version, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(project_id, machine_id) DO UPDATE SET
                       data = excluded.data,
                       version = excluded.version,
                       updated_at = excluded.updated_at""",
                (bp.project_id, bp.machine_id, json.dumps(bp.to_dict()), bp.version, now),
            )


def save_blueprint(blueprint: Blueprint):
    save_blueprints([blueprint])


def get_blueprint(project_id: str, machine_id: str) -> Optional[Blueprint]:
    conn = _get_conn()
    r = conn.execute(
        "SELECT * FROM blueprints WHERE project_id = ? AND machine_id = ?",
        (project_id, machine_id),
    ).fetchone()
    if not r:
        return None
    return _row_to_blueprint(r)


def list_blueprints(project_id: str) -> list[Blueprint]:
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM blueprints WHERE project_id = ? ORDER BY machine_id",
        (project_id,),
    ).fetchall()
    return [_row_to_blueprint(r) for r in rows]


def _row_to_blueprint(r) -> Blueprint:
    bp = Blueprint.from_dict(json.loads(r["data"]))
    bp.version = r["version"]
    return bp


# ── Audit Log ───────────────────────────────────────────────────────────────

def append_audit_log(action: str, project_id: str = None, from_state: str = None,
                     to_state: str = None, detail: dict = None,
                     error: str = None) -> int:
    conn = _get_conn()
    cursor = conn.execute(
        """INSERT INTO audit_log
           (timestamp, project_id, action, from_state, to_state, detail, error)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (time.time(), project_id, action, from_state, to_state,
         json.dumps(detail or {}), error),
    )
    conn.commit()
    return cursor.lastrowid


def list_audit_log(project_id: str = None, limit: int = 100,
                   action: str = None) -> list[dict]:
    conn = _get_conn()
    query = "SELECT * FROM audit_log WHERE 1=1"
    params = []
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if action:
        query += " AND action = ?"
        params.append(action)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = conn.execute(query, params).fetchall()
    return [_row_to_audit(r) for r in rows]


def _row_to_audit(r) -> dict:
    return {
        "id": r["id"],
        "timestamp": r["timestamp"],
        "project_id": r["project_id"],
        "action": r["action"],
        "from_state": r["from_state"],
        "to_state": r["to_state"],
        "detail": json.loads(r["detail"]),
        "error": r["error"],
    }
