from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from timesheet.auth import hash_password

SCHEMA_VERSION = 1

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

ENTRY_PROJECT = "project"
ENTRY_TASK = "task"

UNKNOWN_USER = "Unknown User"

log = logging.getLogger("timesheet.db")


def now_ts() -> int:
    return int(time.time())


@dataclass(frozen=True)
class UserRow:
    id: int
    email: str
    full_name: str
    role: str
    created_at: int
    updated_at: int

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class UserAuthRow:
    id: int
    email: str
    role: str
    password_hash: str


@dataclass(frozen=True)
class ProjectRow:
    id: int
    name: str
    description: str | None
    user_id: int | None
    creator_name: str | None
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class TaskRow:
    id: int
    task_description: str
    created_at: int


@dataclass(frozen=True)
class EntryRow:
    id: int
    user_id: int
    user_name: str
    project_id: int | None
    project_name: str | None
    project_description: str | None
    task_id: int | None
    task_description: str | None
    hours: float
    date: str
    notes: str | None
    version: int
    created_at: int
    updated_at: int

    @property
    def entry_type(self) -> str:
        return ENTRY_PROJECT if self.project_id is not None else ENTRY_TASK

    @property
    def label(self) -> str:
        return self.project_name or self.task_description or "Unknown"


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class TimesheetDB:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            )
            """
        )
        version = self.get_setting_int("schema_version", 0)
        if version == 0:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
            version = SCHEMA_VERSION
        if version > SCHEMA_VERSION:
            raise RuntimeError(f"Unsupported schema_version={version}")

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              email TEXT NOT NULL UNIQUE,
              full_name TEXT NOT NULL DEFAULT '',
              role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
              password_hash TEXT NOT NULL,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS projects (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL,
              description TEXT,
              user_id INTEGER,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE SET NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              task_description TEXT NOT NULL,
              created_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS time_entries (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id INTEGER NOT NULL,
              project_id INTEGER,
              task_id INTEGER,
              hours REAL NOT NULL CHECK (hours >= 0.1 AND hours <= 24),
              date TEXT NOT NULL,
              notes TEXT,
              version INTEGER NOT NULL DEFAULT 1,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              CHECK ((project_id IS NULL) <> (task_id IS NULL)),
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
              FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE RESTRICT,
              FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE RESTRICT
            )
            """
        )

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_user_date ON time_entries(user_id, date)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_project_date ON time_entries(project_id, date)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_task_date ON time_entries(task_id, date)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id)")
        if version < SCHEMA_VERSION:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
        self._conn.commit()

    def set_setting(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO settings(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )
        self._conn.commit()

    def get_setting(self, key: str, default: str = "") -> str:
        row = self._conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        if not row:
            return default
        value = row["value"]
        if value is None:
            return default
        return str(value)

    def get_setting_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get_setting(key, str(default)))
        except ValueError:
            return default

    def ensure_bootstrap_admin(self, *, email: str, password: str) -> None:
        email = email.strip().lower()
        row = self._conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone()
        if row:
            return

        ts = now_ts()
        self._conn.execute(
            """
            INSERT INTO users(email, full_name, role, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (email, "Administrator", ROLE_ADMIN, hash_password(password), ts, ts),
        )
        self._conn.commit()
        log.info("Created bootstrap admin %s", email)

    # users

    def _to_user(self, row: sqlite3.Row) -> UserRow:
        return UserRow(
            id=int(row["id"]),
            email=str(row["email"]),
            full_name=str(row["full_name"] or ""),
            role=str(row["role"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def get_user(self, user_id: int) -> UserRow | None:
        row = self._conn.execute("SELECT * FROM users WHERE id=?", (int(user_id),)).fetchone()
        return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> UserRow | None:
        row = self._conn.execute("SELECT * FROM users WHERE email=?", (email.strip().lower(),)).fetchone()
        return self._to_user(row) if row else None

    def get_user_auth(self, email: str) -> UserAuthRow | None:
        row = self._conn.execute(
            "SELECT id, email, role, password_hash FROM users WHERE email=?",
            (email.strip().lower(),),
        ).fetchone()
        if not row:
            return None
        return UserAuthRow(
            id=int(row["id"]),
            email=str(row["email"]),
            role=str(row["role"]),
            password_hash=str(row["password_hash"]),
        )

    def get_user_role(self, user_id: int) -> str | None:
        row = self._conn.execute("SELECT role FROM users WHERE id=?", (int(user_id),)).fetchone()
        return str(row["role"]) if row else None

    def list_users(self) -> list[UserRow]:
        rows = self._conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()
        return [self._to_user(r) for r in rows]

    def create_user(self, *, email: str, full_name: str, password_hash: str, role: str = ROLE_USER) -> int:
        if role not in ROLES:
            raise ValueError("invalid_role")
        email = email.strip().lower()
        if self.get_user_by_email(email) is not None:
            raise ValueError("email_taken")
        ts = now_ts()
        cur = self._conn.execute(
            """
            INSERT INTO users(email, full_name, role, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (email, full_name.strip(), role, password_hash, ts, ts),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def update_user(self, user_id: int, *, full_name: str | None = None, role: str | None = None) -> UserRow:
        user = self.get_user(user_id)
        if user is None:
            raise ValueError("user_not_found")
        if role is not None and role not in ROLES:
            raise ValueError("invalid_role")
        self._conn.execute(
            "UPDATE users SET full_name=?, role=?, updated_at=? WHERE id=?",
            (
                full_name.strip() if full_name is not None else user.full_name,
                role if role is not None else user.role,
                now_ts(),
                int(user_id),
            ),
        )
        self._conn.commit()
        updated = self.get_user(user_id)
        assert updated is not None
        return updated

    def delete_user(self, user_id: int) -> None:
        cur = self._conn.execute("DELETE FROM users WHERE id=?", (int(user_id),))
        self._conn.commit()
        if not cur.rowcount:
            raise ValueError("user_not_found")

    def set_user_password(self, *, email: str, new_password: str) -> bool:
        cur = self._conn.execute(
            "UPDATE users SET password_hash=?, updated_at=? WHERE email=?",
            (hash_password(new_password), now_ts(), email.strip().lower()),
        )
        self._conn.commit()
        return bool(cur.rowcount)

    # projects

    def _to_project(self, row: sqlite3.Row) -> ProjectRow:
        return ProjectRow(
            id=int(row["id"]),
            name=str(row["name"]),
            description=str(row["description"]) if row["description"] else None,
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            creator_name=str(row["creator_name"]) if row["creator_name"] else None,
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    _PROJECT_SELECT = """
        SELECT p.*, COALESCE(NULLIF(u.full_name, ''), u.email) AS creator_name
        FROM projects p
        LEFT JOIN users u ON u.id=p.user_id
    """

    def list_projects(self, *, user_id: int | None = None, order_by_name: bool = False) -> list[ProjectRow]:
        sql = self._PROJECT_SELECT
        args: list[Any] = []
        if user_id is not None:
            sql += " WHERE p.user_id=?"
            args.append(int(user_id))
        sql += " ORDER BY p.name COLLATE NOCASE" if order_by_name else " ORDER BY p.created_at DESC, p.id DESC"
        rows = self._conn.execute(sql, tuple(args)).fetchall()
        return [self._to_project(r) for r in rows]

    def get_project(self, project_id: int) -> ProjectRow | None:
        row = self._conn.execute(self._PROJECT_SELECT + " WHERE p.id=?", (int(project_id),)).fetchone()
        return self._to_project(row) if row else None

    def create_project(self, *, name: str, description: str | None, user_id: int | None) -> int:
        ts = now_ts()
        cur = self._conn.execute(
            "INSERT INTO projects(name, description, user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (name.strip(), (description or "").strip() or None, int(user_id) if user_id else None, ts, ts),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def update_project(self, project_id: int, *, name: str, description: str | None) -> None:
        cur = self._conn.execute(
            "UPDATE projects SET name=?, description=?, updated_at=? WHERE id=?",
            (name.strip(), (description or "").strip() or None, now_ts(), int(project_id)),
        )
        self._conn.commit()
        if not cur.rowcount:
            raise ValueError("project_not_found")

    def delete_project(self, project_id: int) -> None:
        used = self._conn.execute(
            "SELECT COUNT(*) AS c FROM time_entries WHERE project_id=?", (int(project_id),)
        ).fetchone()
        if int(used["c"] or 0) > 0:
            raise ValueError("project_in_use")
        cur = self._conn.execute("DELETE FROM projects WHERE id=?", (int(project_id),))
        self._conn.commit()
        if not cur.rowcount:
            raise ValueError("project_not_found")

    # tasks

    def _to_task(self, row: sqlite3.Row) -> TaskRow:
        return TaskRow(
            id=int(row["id"]),
            task_description=str(row["task_description"]),
            created_at=int(row["created_at"]),
        )

    def list_tasks(self) -> list[TaskRow]:
        rows = self._conn.execute("SELECT * FROM tasks ORDER BY task_description COLLATE NOCASE").fetchall()
        return [self._to_task(r) for r in rows]

    def get_task(self, task_id: int) -> TaskRow | None:
        row = self._conn.execute("SELECT * FROM tasks WHERE id=?", (int(task_id),)).fetchone()
        return self._to_task(row) if row else None

    def create_task(self, *, task_description: str) -> int:
        cur = self._conn.execute(
            "INSERT INTO tasks(task_description, created_at) VALUES (?, ?)",
            (task_description.strip(), now_ts()),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def delete_task(self, task_id: int) -> None:
        used = self._conn.execute("SELECT COUNT(*) AS c FROM time_entries WHERE task_id=?", (int(task_id),)).fetchone()
        if int(used["c"] or 0) > 0:
            raise ValueError("task_in_use")
        cur = self._conn.execute("DELETE FROM tasks WHERE id=?", (int(task_id),))
        self._conn.commit()
        if not cur.rowcount:
            raise ValueError("task_not_found")

    # time entries

    _ENTRY_SELECT = """
        SELECT e.*,
               COALESCE(NULLIF(u.full_name, ''), u.email) AS user_name,
               p.name AS project_name,
               p.description AS project_description,
               t.task_description AS task_description
        FROM time_entries e
        LEFT JOIN users u ON u.id=e.user_id
        LEFT JOIN projects p ON p.id=e.project_id
        LEFT JOIN tasks t ON t.id=e.task_id
    """

    def _to_entry(self, row: sqlite3.Row) -> EntryRow:
        return EntryRow(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            user_name=str(row["user_name"]) if row["user_name"] else UNKNOWN_USER,
            project_id=int(row["project_id"]) if row["project_id"] is not None else None,
            project_name=str(row["project_name"]) if row["project_name"] is not None else None,
            project_description=str(row["project_description"]) if row["project_description"] else None,
            task_id=int(row["task_id"]) if row["task_id"] is not None else None,
            task_description=str(row["task_description"]) if row["task_description"] is not None else None,
            hours=float(row["hours"]),
            date=str(row["date"]),
            notes=str(row["notes"]) if row["notes"] else None,
            version=int(row["version"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )

    def get_entry(self, entry_id: int) -> EntryRow | None:
        row = self._conn.execute(self._ENTRY_SELECT + " WHERE e.id=?", (int(entry_id),)).fetchone()
        return self._to_entry(row) if row else None

    def list_entries(
        self,
        *,
        user_ids: Iterable[int] | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        entry_type: str | None = None,
        project_ids: Iterable[int] | None = None,
        task_ids: Iterable[int] | None = None,
        limit: int | None = None,
    ) -> list[EntryRow]:
        """Entries newest first, with display names joined in.

        When both ``project_ids`` and ``task_ids`` are given an entry matches
        if it belongs to any of the listed projects OR any of the listed tasks.
        """
        args: list[Any] = []
        clauses: list[str] = []
        users = [int(x) for x in (user_ids or [])]
        projects = [int(x) for x in (project_ids or [])]
        tasks = [int(x) for x in (task_ids or [])]

        if users:
            clauses.append(f"e.user_id IN ({_placeholders(users)})")
            args.extend(users)
        if from_date:
            clauses.append("e.date>=?")
            args.append(from_date)
        if to_date:
            clauses.append("e.date<=?")
            args.append(to_date)
        if entry_type == ENTRY_PROJECT:
            clauses.append("e.project_id IS NOT NULL")
        elif entry_type == ENTRY_TASK:
            clauses.append("e.task_id IS NOT NULL")
        if projects and tasks:
            clauses.append(f"(e.project_id IN ({_placeholders(projects)}) OR e.task_id IN ({_placeholders(tasks)}))")
            args.extend(projects)
            args.extend(tasks)
        elif projects:
            clauses.append(f"e.project_id IN ({_placeholders(projects)})")
            args.extend(projects)
        elif tasks:
            clauses.append(f"e.task_id IN ({_placeholders(tasks)})")
            args.extend(tasks)

        sql = self._ENTRY_SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY e.date DESC, e.id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))

        rows = self._conn.execute(sql, tuple(args)).fetchall()
        return [self._to_entry(r) for r in rows]

    def count_entries(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS c FROM time_entries").fetchone()
        return int(row["c"] or 0)

    def _check_association(self, project_id: int | None, task_id: int | None) -> None:
        if (project_id is None) == (task_id is None):
            raise ValueError("invalid_association")
        if project_id is not None and self.get_project(project_id) is None:
            raise ValueError("project_not_found")
        if task_id is not None and self.get_task(task_id) is None:
            raise ValueError("task_not_found")

    def create_entry(
        self,
        *,
        user_id: int,
        project_id: int | None,
        task_id: int | None,
        hours: float,
        date: str,
        notes: str | None,
    ) -> int:
        self._check_association(project_id, task_id)
        if self.get_user(user_id) is None:
            raise ValueError("user_not_found")
        ts = now_ts()
        cur = self._conn.execute(
            """
            INSERT INTO time_entries(user_id, project_id, task_id, hours, date, notes, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                int(user_id),
                int(project_id) if project_id is not None else None,
                int(task_id) if task_id is not None else None,
                float(hours),
                date,
                (notes or "").strip() or None,
                ts,
                ts,
            ),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def update_entry(
        self,
        *,
        entry_id: int,
        expected_version: int,
        project_id: int | None,
        task_id: int | None,
        hours: float,
        date: str,
        notes: str | None,
    ) -> int:
        """Apply an edit made against ``expected_version``; returns the new version."""
        self._check_association(project_id, task_id)
        cur = self._conn.execute(
            """
            UPDATE time_entries
            SET project_id=?, task_id=?, hours=?, date=?, notes=?,
                version=version + 1, updated_at=?
            WHERE id=? AND version=?
            """,
            (
                int(project_id) if project_id is not None else None,
                int(task_id) if task_id is not None else None,
                float(hours),
                date,
                (notes or "").strip() or None,
                now_ts(),
                int(entry_id),
                int(expected_version),
            ),
        )
        self._conn.commit()
        if not cur.rowcount:
            if self.get_entry(entry_id) is None:
                raise ValueError("entry_not_found")
            raise ValueError("version_conflict")
        return int(expected_version) + 1

    def delete_entry(self, entry_id: int) -> None:
        cur = self._conn.execute("DELETE FROM time_entries WHERE id=?", (int(entry_id),))
        self._conn.commit()
        if not cur.rowcount:
            raise ValueError("entry_not_found")

    def dump_json(self) -> str:
        data = {
            "users": [u.__dict__ for u in self.list_users()],
            "projects": [p.__dict__ for p in self.list_projects()],
            "tasks": [t.__dict__ for t in self.list_tasks()],
            "entries": [e.__dict__ for e in self.list_entries()],
        }
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
