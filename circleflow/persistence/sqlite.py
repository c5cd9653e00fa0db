"""SQLite implementation of the repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ..contracts import WorkflowDefinition
from .models import (
    AppUser,
    ExecutionLogEntry,
    Notification,
    Request,
    RequestStep,
    utcnow,
)
from .repository import CircleRepository, merge_metadata

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        organization_id TEXT,
        name TEXT NOT NULL,
        definition TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS requests (
        id TEXT PRIMARY KEY,
        creator_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        title TEXT,
        status TEXT NOT NULL,
        metadata TEXT,
        workflow_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_users (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        display_name TEXT,
        email TEXT,
        role TEXT,
        department_id TEXT,
        manager_id TEXT,
        is_department_head INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS request_steps (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        approver_user_id TEXT,
        status TEXT NOT NULL,
        comment TEXT,
        created_at TEXT NOT NULL,
        decided_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_request_steps_pending
    ON request_steps (request_id, approver_user_id) WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        sender_id TEXT,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        metadata TEXT,
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workflow_id TEXT,
        request_id TEXT NOT NULL,
        action TEXT NOT NULL,
        results TEXT,
        created_at TEXT NOT NULL
    )
    """,
)

_STEP_COLUMNS = (
    "id, request_id, step_index, step_type, approver_user_id, status, comment, "
    "created_at, decided_at"
)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository(CircleRepository):
    """Persist state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @staticmethod
    def _to_request(row: sqlite3.Row) -> Request:
        return Request(
            id=row["id"],
            creator_id=row["creator_id"],
            organization_id=row["organization_id"],
            title=row["title"] or "",
            status=row["status"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            workflow_id=row["workflow_id"],
        )

    @staticmethod
    def _to_step(row: sqlite3.Row) -> RequestStep:
        return RequestStep(
            id=row["id"],
            request_id=row["request_id"],
            step_index=row["step_index"],
            step_type=row["step_type"],
            approver_user_id=row["approver_user_id"],
            status=row["status"],
            comment=row["comment"],
            created_at=_dt(row["created_at"]),
            decided_at=_dt(row["decided_at"]),
        )

    @staticmethod
    def _to_user(row: sqlite3.Row) -> AppUser:
        return AppUser(
            id=row["id"],
            organization_id=row["organization_id"],
            display_name=row["display_name"] or "",
            email=row["email"],
            role=row["role"],
            department_id=row["department_id"],
            manager_id=row["manager_id"],
            is_department_head=bool(row["is_department_head"]),
        )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO workflow_definitions
                (id, organization_id, name, definition, is_active)
            VALUES (?, ?, ?, ?, ?)
            """,
            definition.id,
            definition.organization_id,
            definition.name,
            definition.model_dump_json(by_alias=True),
            int(definition.is_active),
        )

    async def get_workflow_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflow_definitions WHERE id = ? AND is_active = 1",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["definition"])

    async def list_workflow_definitions(
        self, organization_id: str | None = None
    ) -> list[WorkflowDefinition]:
        if organization_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT definition FROM workflow_definitions WHERE is_active = 1 ORDER BY name",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                """
                SELECT definition FROM workflow_definitions
                WHERE is_active = 1 AND organization_id = ? ORDER BY name
                """,
                organization_id,
            )
        return [WorkflowDefinition.model_validate_json(r["definition"]) for r in rows]

    # ------------------------------------------------------------------
    # Requests
    async def create_request(self, request: Request) -> Request:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO requests
                (id, creator_id, organization_id, title, status, metadata, workflow_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            request.id,
            request.creator_id,
            request.organization_id,
            request.title,
            request.status,
            json.dumps(request.metadata),
            request.workflow_id,
        )
        return request

    async def get_request(self, request_id: str) -> Request | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM requests WHERE id = ?", request_id
        )
        return self._to_request(row) if row else None

    async def update_request_status(self, request_id: str, status: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE requests SET status = ? WHERE id = ?",
            status,
            request_id,
        )

    def _merge_metadata(self, request_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT metadata FROM requests WHERE id = ?", (request_id,)
            ).fetchone()
            if row is None:
                return None
            merged = merge_metadata(
                json.loads(row["metadata"]) if row["metadata"] else {}, patch
            )
            cur.execute(
                "UPDATE requests SET metadata = ? WHERE id = ?",
                (json.dumps(merged, default=str), request_id),
            )
            return merged

    async def merge_request_metadata(
        self, request_id: str, patch: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._merge_metadata, request_id, patch)

    # ------------------------------------------------------------------
    # Users
    async def save_user(self, user: AppUser) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO app_users
                (id, organization_id, display_name, email, role, department_id,
                 manager_id, is_department_head)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            user.id,
            user.organization_id,
            user.display_name,
            user.email,
            user.role,
            user.department_id,
            user.manager_id,
            int(user.is_department_head),
        )

    async def get_user(self, user_id: str) -> AppUser | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM app_users WHERE id = ?", user_id
        )
        return self._to_user(row) if row else None

    async def find_user_by_role(self, organization_id: str, role: str) -> AppUser | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM app_users WHERE organization_id = ? AND role = ? LIMIT 1",
            organization_id,
            role,
        )
        return self._to_user(row) if row else None

    async def find_department_head(
        self, organization_id: str, department_id: str
    ) -> AppUser | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM app_users
            WHERE organization_id = ? AND department_id = ? AND is_department_head = 1
            LIMIT 1
            """,
            organization_id,
            department_id,
        )
        return self._to_user(row) if row else None

    # ------------------------------------------------------------------
    # Request steps
    def _create_pending_step(
        self, request_id: str, approver_user_id: str, step_type: str
    ) -> tuple[RequestStep, bool]:
        lookup = (
            f"SELECT {_STEP_COLUMNS} FROM request_steps "
            "WHERE request_id = ? AND approver_user_id = ? AND status = 'pending'"
        )
        try:
            with self._transaction() as cur:
                row = cur.execute(lookup, (request_id, approver_user_id)).fetchone()
                if row is not None:
                    return self._to_step(row), False
                max_row = cur.execute(
                    "SELECT MAX(step_index) AS max_index FROM request_steps WHERE request_id = ?",
                    (request_id,),
                ).fetchone()
                step = RequestStep(
                    request_id=request_id,
                    step_index=(max_row["max_index"] or 0) + 1,
                    step_type=step_type,
                    approver_user_id=approver_user_id,
                    status="pending",
                )
                cur.execute(
                    f"INSERT INTO request_steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        step.id,
                        step.request_id,
                        step.step_index,
                        step.step_type,
                        step.approver_user_id,
                        step.status,
                        None,
                        step.created_at.isoformat(),
                        None,
                    ),
                )
                return step, True
        except sqlite3.IntegrityError:
            # another writer won the partial unique index
            row = self._fetchone(lookup, request_id, approver_user_id)
            if row is None:
                raise
            return self._to_step(row), False

    async def create_pending_step(
        self, request_id: str, approver_user_id: str, step_type: str = "approval"
    ) -> tuple[RequestStep, bool]:
        return await asyncio.to_thread(
            self._create_pending_step, request_id, approver_user_id, step_type
        )

    async def find_pending_step(
        self, request_id: str, approver_user_id: str
    ) -> RequestStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_STEP_COLUMNS} FROM request_steps
            WHERE request_id = ? AND approver_user_id = ? AND status = 'pending'
            """,
            request_id,
            approver_user_id,
        )
        return self._to_step(row) if row else None

    async def get_request_step(self, step_id: str) -> RequestStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_STEP_COLUMNS} FROM request_steps WHERE id = ?",
            step_id,
        )
        return self._to_step(row) if row else None

    async def list_request_steps(self, request_id: str) -> list[RequestStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM request_steps WHERE request_id = ? ORDER BY step_index",
            request_id,
        )
        return [self._to_step(r) for r in rows]

    async def update_step_status(
        self, step_id: str, status: str, comment: str | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE request_steps SET status = ?, comment = ?, decided_at = ? WHERE id = ?",
            status,
            comment,
            utcnow().isoformat(),
            step_id,
        )

    # ------------------------------------------------------------------
    # Notifications
    async def create_notification(self, notification: Notification) -> Notification:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO notifications
                (id, organization_id, recipient_id, sender_id, type, title, message,
                 metadata, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            notification.id,
            notification.organization_id,
            notification.recipient_id,
            notification.sender_id,
            notification.type,
            notification.title,
            notification.message,
            json.dumps(notification.metadata),
            int(notification.is_read),
            notification.created_at.isoformat(),
        )
        return notification

    async def list_notifications(self, recipient_id: str | None = None) -> list[Notification]:
        if recipient_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM notifications ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM notifications WHERE recipient_id = ? ORDER BY created_at",
                recipient_id,
            )
        return [
            Notification(
                id=r["id"],
                organization_id=r["organization_id"],
                recipient_id=r["recipient_id"],
                sender_id=r["sender_id"],
                type=r["type"],
                title=r["title"],
                message=r["message"],
                metadata=json.loads(r["metadata"]) if r["metadata"] else {},
                is_read=bool(r["is_read"]),
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Execution log
    def _append_log(self, entry: ExecutionLogEntry) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO workflow_executions
                    (workflow_id, request_id, action, results, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.workflow_id,
                    entry.request_id,
                    entry.action,
                    json.dumps(entry.results, default=str),
                    entry.created_at.isoformat(),
                ),
            )
            return cur.lastrowid

    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        entry_id = await asyncio.to_thread(self._append_log, entry)
        return entry.model_copy(update={"id": entry_id})

    async def list_execution_log(
        self, request_id: str, workflow_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionLogEntry]:
        query = "SELECT * FROM workflow_executions WHERE request_id = ?"
        params: list[Any] = [request_id]
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [
            ExecutionLogEntry(
                id=r["id"],
                workflow_id=r["workflow_id"],
                request_id=r["request_id"],
                action=r["action"],
                results=json.loads(r["results"]) if r["results"] else None,
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
