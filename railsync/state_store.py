from __future__ import annotations

import json
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_JSON_COLUMNS = {"metadata"}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS global_calendar_sync_settings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_roadmap_events INTEGER NOT NULL DEFAULT 1,
    sync_tasks_with_dates INTEGER NOT NULL DEFAULT 1,
    sync_mindmesh_events INTEGER NOT NULL DEFAULT 1,
    target_calendar_type TEXT NOT NULL DEFAULT 'personal'
        CHECK (target_calendar_type IN ('personal', 'shared', 'both')),
    target_space_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id)
);

CREATE TABLE IF NOT EXISTS project_calendar_sync_settings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_roadmap_events INTEGER NOT NULL DEFAULT 1,
    sync_tasks_with_dates INTEGER NOT NULL DEFAULT 1,
    sync_mindmesh_events INTEGER NOT NULL DEFAULT 1,
    target_calendar_type TEXT NOT NULL DEFAULT 'personal'
        CHECK (target_calendar_type IN ('personal', 'shared', 'both')),
    target_space_id TEXT,
    inherit_from_global INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, project_id)
);

CREATE TABLE IF NOT EXISTS track_calendar_sync_settings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    track_id TEXT NOT NULL,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_roadmap_events INTEGER NOT NULL DEFAULT 1,
    sync_tasks_with_dates INTEGER NOT NULL DEFAULT 1,
    sync_mindmesh_events INTEGER NOT NULL DEFAULT 1,
    target_calendar_type TEXT NOT NULL DEFAULT 'personal'
        CHECK (target_calendar_type IN ('personal', 'shared', 'both')),
    target_space_id TEXT,
    inherit_from_project INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, project_id, track_id)
);

CREATE TABLE IF NOT EXISTS subtrack_calendar_sync_settings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    track_id TEXT NOT NULL,
    subtrack_id TEXT NOT NULL,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_roadmap_events INTEGER NOT NULL DEFAULT 1,
    sync_tasks_with_dates INTEGER NOT NULL DEFAULT 1,
    sync_mindmesh_events INTEGER NOT NULL DEFAULT 1,
    target_calendar_type TEXT NOT NULL DEFAULT 'personal'
        CHECK (target_calendar_type IN ('personal', 'shared', 'both')),
    target_space_id TEXT,
    inherit_from_track INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, project_id, track_id, subtrack_id)
);

CREATE TABLE IF NOT EXISTS event_calendar_sync_settings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    entity_type TEXT NOT NULL
        CHECK (entity_type IN ('roadmap_event', 'task', 'mindmesh_event')),
    track_id TEXT,
    subtrack_id TEXT,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    target_calendar_type TEXT NOT NULL DEFAULT 'personal'
        CHECK (target_calendar_type IN ('personal', 'shared', 'both')),
    target_space_id TEXT,
    inherit_from_subtrack INTEGER,
    inherit_from_track INTEGER,
    inherit_from_project INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, project_id, event_id, entity_type)
);

CREATE TABLE IF NOT EXISTS master_projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS roadmap_items (
    id TEXT PRIMARY KEY,
    master_project_id TEXT NOT NULL,
    track_id TEXT,
    subtrack_id TEXT,
    parent_item_id TEXT,
    type TEXT NOT NULL DEFAULT 'task',
    title TEXT NOT NULL DEFAULT '',
    description TEXT DEFAULT '',
    start_date TEXT,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS household_members (
    id TEXT PRIMARY KEY,
    household_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    household_id TEXT NOT NULL,
    created_by TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT DEFAULT '',
    start_at TEXT NOT NULL,
    end_at TEXT NOT NULL,
    all_day INTEGER NOT NULL DEFAULT 0,
    color TEXT,
    source_type TEXT,
    source_entity_id TEXT,
    source_project_id TEXT,
    source_track_id TEXT,
    source_subtrack_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contexts (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    owner_user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}',
    linked_project_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS context_events (
    id TEXT PRIMARY KEY,
    context_id TEXT NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
    created_by TEXT NOT NULL,
    event_type TEXT NOT NULL,
    time_scope TEXT NOT NULL DEFAULT 'timed',
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    start_at TEXT NOT NULL,
    end_at TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_projections (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL REFERENCES context_events(id) ON DELETE CASCADE,
    target_user_id TEXT NOT NULL,
    target_space_id TEXT,
    scope TEXT NOT NULL DEFAULT 'full',
    status TEXT NOT NULL DEFAULT 'pending',
    created_by TEXT NOT NULL,
    accepted_at TEXT,
    revoked_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (event_id, target_user_id, target_space_id)
);

CREATE INDEX IF NOT EXISTS idx_roadmap_items_project ON roadmap_items(master_project_id);
CREATE INDEX IF NOT EXISTS idx_roadmap_items_track ON roadmap_items(track_id);
CREATE INDEX IF NOT EXISTS idx_roadmap_items_subtrack ON roadmap_items(subtrack_id);
CREATE INDEX IF NOT EXISTS idx_calendar_events_source
    ON calendar_events(source_type, source_entity_id, created_by);
CREATE INDEX IF NOT EXISTS idx_projections_event ON calendar_projections(event_id);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    user_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);
"""

TABLES = frozenset(
    {
        "global_calendar_sync_settings",
        "project_calendar_sync_settings",
        "track_calendar_sync_settings",
        "subtrack_calendar_sync_settings",
        "event_calendar_sync_settings",
        "master_projects",
        "roadmap_items",
        "household_members",
        "calendar_events",
        "contexts",
        "context_events",
        "calendar_projections",
    }
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_table(table: str) -> str:
    if table not in TABLES:
        raise ValueError(f"unknown table: {table}")
    return table


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"invalid column name: {name}")
    return name


def _column_sql(column: str) -> str:
    # "metadata->>source" addresses a key inside a JSON column.
    if "->>" in column:
        base, key = column.split("->>", 1)
        return f"json_extract({_check_identifier(base.strip())}, '$.{_check_identifier(key.strip())}')"
    return _check_identifier(column)


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(value if value is not None else {}, ensure_ascii=False)
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _decode(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    for column in _JSON_COLUMNS:
        if column in item:
            item[column] = json.loads(item[column] or "{}")
    return item


def _where(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    if not filters:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        column_sql = _column_sql(column)
        if value is None:
            clauses.append(f"{column_sql} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{column_sql} IN ({placeholders})")
            params.extend(_encode(column, v) for v in values)
        else:
            clauses.append(f"{column_sql} = ?")
            params.append(value if "->>" in column else _encode(column, value))
    return " WHERE " + " AND ".join(clauses), params


class StateStore:
    """sqlite-backed table store.

    Every call is its own connection and transaction; there is no way to span
    several calls with one transaction. Filters map ``{column: value}`` to
    equality, ``None`` to ``IS NULL`` and sequences to ``IN``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where_sql, params = _where(filters)
        sql = f"SELECT * FROM {_check_table(table)}{where_sql}"
        if order_by:
            sql += f" ORDER BY {_column_sql(order_by)} {'DESC' if descending else 'ASC'}, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, int(limit)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [_decode(row) for row in rows]

    def select_one(self, table: str, filters: dict[str, Any] | None = None) -> dict[str, Any] | None:
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        now = _utc_now()
        row = {"id": str(uuid.uuid4()), **values, "created_at": now, "updated_at": now}
        columns = [_check_identifier(column) for column in row]
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {_check_table(table)}({', '.join(columns)}) VALUES ({placeholders})",
                    [_encode(column, row[column]) for column in columns],
                )
        return self.select_one(table, {"id": row["id"]}) or row

    def update(self, table: str, values: dict[str, Any], filters: dict[str, Any]) -> int:
        if not filters:
            raise ValueError("update requires filters")
        payload = {**values, "updated_at": _utc_now()}
        assignments = ", ".join(f"{_check_identifier(column)} = ?" for column in payload)
        where_sql, where_params = _where(filters)
        params = [_encode(column, value) for column, value in payload.items()] + where_params
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(f"UPDATE {_check_table(table)} SET {assignments}{where_sql}", params)
                return int(cursor.rowcount)

    def delete(self, table: str, filters: dict[str, Any]) -> int:
        if not filters:
            raise ValueError("delete requires filters")
        where_sql, params = _where(filters)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(f"DELETE FROM {_check_table(table)}{where_sql}", params)
                return int(cursor.rowcount)

    def upsert(self, table: str, values: dict[str, Any], conflict: tuple[str, ...]) -> dict[str, Any]:
        now = _utc_now()
        row = {"id": str(uuid.uuid4()), **values, "created_at": now, "updated_at": now}
        columns = [_check_identifier(column) for column in row]
        conflict_columns = [_check_identifier(column) for column in conflict]
        updatable = [c for c in columns if c not in conflict_columns and c not in {"id", "created_at"}]
        assignments = ", ".join(f"{column} = excluded.{column}" for column in updatable)
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {_check_table(table)}({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(conflict_columns)}) DO UPDATE SET {assignments}"
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(sql, [_encode(column, row[column]) for column in columns])
            stored = self.select_one(table, {column: values[column] for column in conflict_columns})
        if stored is None:
            raise sqlite3.DatabaseError(f"upsert into {table} did not persist a row")
        return stored

    def record_activity(
        self,
        *,
        user_id: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO activity_log(created_at, user_id, entity_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), user_id, entity_id, action, json.dumps(details, ensure_ascii=False, default=str)),
                )
                return int(cursor.lastrowid)

    def recent_activity(
        self,
        limit: int = 100,
        *,
        user_id: str | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, created_at, user_id, entity_id, action, details_json
                    FROM activity_log
                    {where_sql}
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    params,
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
