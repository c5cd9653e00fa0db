"""In-memory implementation of the repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, List

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


class InMemoryRepository(CircleRepository):
    """Store state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._requests: Dict[str, Request] = {}
        self._users: Dict[str, AppUser] = {}
        self._steps: Dict[str, RequestStep] = {}
        self._notifications: List[Notification] = []
        self._log: List[ExecutionLogEntry] = []
        self._log_id = 0
        self._step_locks: Dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._metadata_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow_definition(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.id] = definition.model_copy(deep=True)

    async def get_workflow_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._workflows.get(workflow_id)
        if definition is None or not definition.is_active:
            return None
        return definition.model_copy(deep=True)

    async def list_workflow_definitions(
        self, organization_id: str | None = None
    ) -> list[WorkflowDefinition]:
        return sorted(
            (
                wf.model_copy(deep=True)
                for wf in self._workflows.values()
                if wf.is_active
                and (organization_id is None or wf.organization_id == organization_id)
            ),
            key=lambda wf: wf.name,
        )

    # ------------------------------------------------------------------
    async def create_request(self, request: Request) -> Request:
        self._requests[request.id] = request.model_copy(deep=True)
        return request

    async def get_request(self, request_id: str) -> Request | None:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def update_request_status(self, request_id: str, status: str) -> None:
        request = self._requests.get(request_id)
        if request:
            request.status = status

    async def merge_request_metadata(
        self, request_id: str, patch: dict[str, Any]
    ) -> dict[str, Any] | None:
        async with self._metadata_lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            request.metadata = merge_metadata(request.metadata, patch)
            return dict(request.metadata)

    # ------------------------------------------------------------------
    async def save_user(self, user: AppUser) -> None:
        self._users[user.id] = user

    async def get_user(self, user_id: str) -> AppUser | None:
        return self._users.get(user_id)

    async def find_user_by_role(self, organization_id: str, role: str) -> AppUser | None:
        for user in self._users.values():
            if user.organization_id == organization_id and user.role == role:
                return user
        return None

    async def find_department_head(
        self, organization_id: str, department_id: str
    ) -> AppUser | None:
        for user in self._users.values():
            if (
                user.organization_id == organization_id
                and user.department_id == department_id
                and user.is_department_head
            ):
                return user
        return None

    # ------------------------------------------------------------------
    async def create_pending_step(
        self, request_id: str, approver_user_id: str, step_type: str = "approval"
    ) -> tuple[RequestStep, bool]:
        async with self._step_locks[(request_id, approver_user_id)]:
            existing = await self.find_pending_step(request_id, approver_user_id)
            if existing is not None:
                return existing, False
            indexes = [s.step_index for s in self._steps.values() if s.request_id == request_id]
            step = RequestStep(
                request_id=request_id,
                step_index=max(indexes, default=0) + 1,
                step_type=step_type,
                approver_user_id=approver_user_id,
                status="pending",
            )
            self._steps[step.id] = step
            return step.model_copy(), True

    async def find_pending_step(
        self, request_id: str, approver_user_id: str
    ) -> RequestStep | None:
        for step in self._steps.values():
            if (
                step.request_id == request_id
                and step.approver_user_id == approver_user_id
                and step.status == "pending"
            ):
                return step.model_copy()
        return None

    async def get_request_step(self, step_id: str) -> RequestStep | None:
        step = self._steps.get(step_id)
        return step.model_copy() if step else None

    async def list_request_steps(self, request_id: str) -> list[RequestStep]:
        steps = [s.model_copy() for s in self._steps.values() if s.request_id == request_id]
        return sorted(steps, key=lambda s: s.step_index)

    async def update_step_status(
        self, step_id: str, status: str, comment: str | None = None
    ) -> None:
        step = self._steps.get(step_id)
        if step:
            step.status = status
            step.comment = comment
            step.decided_at = utcnow()

    # ------------------------------------------------------------------
    async def create_notification(self, notification: Notification) -> Notification:
        self._notifications.append(notification)
        return notification

    async def list_notifications(self, recipient_id: str | None = None) -> list[Notification]:
        return [
            n
            for n in self._notifications
            if recipient_id is None or n.recipient_id == recipient_id
        ]

    # ------------------------------------------------------------------
    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        self._log_id += 1
        stored = entry.model_copy(update={"id": self._log_id})
        self._log.append(stored)
        return stored

    async def list_execution_log(
        self, request_id: str, workflow_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionLogEntry]:
        entries = [
            e
            for e in reversed(self._log)
            if e.request_id == request_id
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        return entries[:limit] if limit is not None else entries

    async def close(self) -> None:
        pass
