"""PostgreSQL implementation of the repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

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
        definition JSONB NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS requests (
        id TEXT PRIMARY KEY,
        creator_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        title TEXT,
        status TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
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
        is_department_head BOOLEAN NOT NULL DEFAULT FALSE
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
        created_at TIMESTAMPTZ NOT NULL,
        decided_at TIMESTAMPTZ
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
        metadata JSONB,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id SERIAL PRIMARY KEY,
        workflow_id TEXT,
        request_id TEXT NOT NULL,
        action TEXT NOT NULL,
        results JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)

_STEP_COLUMNS = (
    "id, request_id, step_index, step_type, approver_user_id, status, comment, "
    "created_at, decided_at"
)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class PostgresRepository(CircleRepository):
    """Persist state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=_json_dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    @staticmethod
    def _to_request(row: asyncpg.Record) -> Request:
        return Request(
            id=row["id"],
            creator_id=row["creator_id"],
            organization_id=row["organization_id"],
            title=row["title"] or "",
            status=row["status"],
            metadata=row["metadata"] or {},
            workflow_id=row["workflow_id"],
        )

    @staticmethod
    def _to_step(row: asyncpg.Record) -> RequestStep:
        return RequestStep(**dict(row))

    @staticmethod
    def _to_user(row: asyncpg.Record) -> AppUser:
        data = dict(row)
        data["display_name"] = data["display_name"] or ""
        return AppUser(**data)

    # ------------------------------------------------------------------
    async def save_workflow_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_definitions (id, organization_id, name, definition, is_active)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE
                SET organization_id = EXCLUDED.organization_id,
                    name = EXCLUDED.name,
                    definition = EXCLUDED.definition,
                    is_active = EXCLUDED.is_active
                """,
                definition.id,
                definition.organization_id,
                definition.name,
                definition.model_dump(mode="json", by_alias=True),
                definition.is_active,
            )
        finally:
            await conn.close()

    async def get_workflow_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT definition FROM workflow_definitions WHERE id = $1 AND is_active",
                workflow_id,
            )
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate(row["definition"]) if row else None

    async def list_workflow_definitions(
        self, organization_id: str | None = None
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT definition FROM workflow_definitions
                WHERE is_active AND ($1::text IS NULL OR organization_id = $1)
                ORDER BY name
                """,
                organization_id,
            )
        finally:
            await conn.close()
        return [WorkflowDefinition.model_validate(r["definition"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_request(self, request: Request) -> Request:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO requests
                    (id, creator_id, organization_id, title, status, metadata, workflow_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                request.id,
                request.creator_id,
                request.organization_id,
                request.title,
                request.status,
                request.metadata,
                request.workflow_id,
            )
        finally:
            await conn.close()
        return request

    async def get_request(self, request_id: str) -> Request | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM requests WHERE id = $1", request_id)
        finally:
            await conn.close()
        return self._to_request(row) if row else None

    async def update_request_status(self, request_id: str, status: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE requests SET status = $1 WHERE id = $2", status, request_id
            )
        finally:
            await conn.close()

    async def merge_request_metadata(
        self, request_id: str, patch: dict[str, Any]
    ) -> dict[str, Any] | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT metadata FROM requests WHERE id = $1 FOR UPDATE", request_id
                )
                if row is None:
                    return None
                merged = merge_metadata(row["metadata"], patch)
                await conn.execute(
                    "UPDATE requests SET metadata = $1 WHERE id = $2", merged, request_id
                )
        finally:
            await conn.close()
        return merged

    # ------------------------------------------------------------------
    async def save_user(self, user: AppUser) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO app_users
                    (id, organization_id, display_name, email, role, department_id,
                     manager_id, is_department_head)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (id) DO UPDATE
                SET organization_id = EXCLUDED.organization_id,
                    display_name = EXCLUDED.display_name,
                    email = EXCLUDED.email,
                    role = EXCLUDED.role,
                    department_id = EXCLUDED.department_id,
                    manager_id = EXCLUDED.manager_id,
                    is_department_head = EXCLUDED.is_department_head
                """,
                user.id,
                user.organization_id,
                user.display_name,
                user.email,
                user.role,
                user.department_id,
                user.manager_id,
                user.is_department_head,
            )
        finally:
            await conn.close()

    async def _fetch_user(self, query: str, *params: Any) -> AppUser | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
        finally:
            await conn.close()
        return self._to_user(row) if row else None

    async def get_user(self, user_id: str) -> AppUser | None:
        return await self._fetch_user("SELECT * FROM app_users WHERE id = $1", user_id)

    async def find_user_by_role(self, organization_id: str, role: str) -> AppUser | None:
        return await self._fetch_user(
            "SELECT * FROM app_users WHERE organization_id = $1 AND role = $2 LIMIT 1",
            organization_id,
            role,
        )

    async def find_department_head(
        self, organization_id: str, department_id: str
    ) -> AppUser | None:
        return await self._fetch_user(
            """
            SELECT * FROM app_users
            WHERE organization_id = $1 AND department_id = $2 AND is_department_head
            LIMIT 1
            """,
            organization_id,
            department_id,
        )

    # ------------------------------------------------------------------
    async def create_pending_step(
        self, request_id: str, approver_user_id: str, step_type: str = "approval"
    ) -> tuple[RequestStep, bool]:
        lookup = (
            f"SELECT {_STEP_COLUMNS} FROM request_steps "
            "WHERE request_id = $1 AND approver_user_id = $2 AND status = 'pending'"
        )
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{request_id}:{approver_user_id}",
                )
                row = await conn.fetchrow(lookup, request_id, approver_user_id)
                if row is not None:
                    return self._to_step(row), False
                max_index = await conn.fetchval(
                    "SELECT COALESCE(MAX(step_index), 0) FROM request_steps WHERE request_id = $1",
                    request_id,
                )
                step = RequestStep(
                    request_id=request_id,
                    step_index=max_index + 1,
                    step_type=step_type,
                    approver_user_id=approver_user_id,
                    status="pending",
                )
                inserted = await conn.fetchrow(
                    f"""
                    INSERT INTO request_steps ({_STEP_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, NULL, $7, NULL)
                    ON CONFLICT DO NOTHING
                    RETURNING id
                    """,
                    step.id,
                    step.request_id,
                    step.step_index,
                    step.step_type,
                    step.approver_user_id,
                    step.status,
                    step.created_at,
                )
                if inserted is None:
                    row = await conn.fetchrow(lookup, request_id, approver_user_id)
                    return self._to_step(row), False
                return step, True
        finally:
            await conn.close()

    async def find_pending_step(
        self, request_id: str, approver_user_id: str
    ) -> RequestStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_STEP_COLUMNS} FROM request_steps
                WHERE request_id = $1 AND approver_user_id = $2 AND status = 'pending'
                """,
                request_id,
                approver_user_id,
            )
        finally:
            await conn.close()
        return self._to_step(row) if row else None

    async def get_request_step(self, step_id: str) -> RequestStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_STEP_COLUMNS} FROM request_steps WHERE id = $1", step_id
            )
        finally:
            await conn.close()
        return self._to_step(row) if row else None

    async def list_request_steps(self, request_id: str) -> list[RequestStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM request_steps WHERE request_id = $1 ORDER BY step_index",
                request_id,
            )
        finally:
            await conn.close()
        return [self._to_step(r) for r in rows]

    async def update_step_status(
        self, step_id: str, status: str, comment: str | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE request_steps SET status = $1, comment = $2, decided_at = $3 WHERE id = $4",
                status,
                comment,
                utcnow(),
                step_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_notification(self, notification: Notification) -> Notification:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO notifications
                    (id, organization_id, recipient_id, sender_id, type, title, message,
                     metadata, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                notification.id,
                notification.organization_id,
                notification.recipient_id,
                notification.sender_id,
                notification.type,
                notification.title,
                notification.message,
                notification.metadata,
                notification.is_read,
                notification.created_at,
            )
        finally:
            await conn.close()
        return notification

    async def list_notifications(self, recipient_id: str | None = None) -> list[Notification]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                WHERE ($1::text IS NULL OR recipient_id = $1)
                ORDER BY created_at
                """,
                recipient_id,
            )
        finally:
            await conn.close()
        return [Notification(**{**dict(r), "metadata": r["metadata"] or {}}) for r in rows]

    # ------------------------------------------------------------------
    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        conn = await self._connect()
        try:
            entry_id = await conn.fetchval(
                """
                INSERT INTO workflow_executions (workflow_id, request_id, action, results, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                entry.workflow_id,
                entry.request_id,
                entry.action,
                entry.results,
                entry.created_at,
            )
        finally:
            await conn.close()
        return entry.model_copy(update={"id": entry_id})

    async def list_execution_log(
        self, request_id: str, workflow_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionLogEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM workflow_executions
                WHERE request_id = $1 AND ($2::text IS NULL OR workflow_id = $2)
                ORDER BY id DESC
                LIMIT $3
                """,
                request_id,
                workflow_id,
                limit,
            )
        finally:
            await conn.close()
        return [ExecutionLogEntry(**dict(r)) for r in rows]

    async def close(self) -> None:
        pass
