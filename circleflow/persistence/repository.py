"""Repository abstraction for workflow, request and approval persistence."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from ..contracts import WorkflowDefinition
from .models import (
    AppUser,
    ExecutionLogEntry,
    Notification,
    Request,
    RequestStep,
)


def merge_metadata(base: Mapping[str, Any] | None, patch: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``base`` updated with ``patch``.

    Nested mappings are merged key by key so that writers touching different
    keys of the same namespace never drop each other's values.
    """
    merged: dict[str, Any] = dict(base or {})
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_metadata(current, value)
        else:
            merged[key] = value
    return merged


class CircleRepository(Protocol):
    """Protocol for persistence backends."""

    async def save_workflow_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return the definition with ``workflow_id``."""

    async def list_workflow_definitions(
        self, organization_id: str | None = None
    ) -> list[WorkflowDefinition]:
        """Return active definitions, optionally for one organization."""

    async def create_request(self, request: Request) -> Request:
        """Persist a new request."""

    async def get_request(self, request_id: str) -> Request | None:
        """Return the request with ``request_id``."""

    async def update_request_status(self, request_id: str, status: str) -> None:
        """Set the request status."""

    async def merge_request_metadata(
        self, request_id: str, patch: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Atomically merge ``patch`` into the request metadata.

        Returns the merged metadata, or ``None`` when the request is missing.
        """

    async def save_user(self, user: AppUser) -> None:
        """Insert or replace a directory user."""

    async def get_user(self, user_id: str) -> AppUser | None:
        """Return the user with ``user_id``."""

    async def find_user_by_role(self, organization_id: str, role: str) -> AppUser | None:
        """Return the first user holding ``role`` in the organization."""

    async def find_department_head(
        self, organization_id: str, department_id: str
    ) -> AppUser | None:
        """Return the head of ``department_id``."""

    async def create_pending_step(
        self, request_id: str, approver_user_id: str, step_type: str = "approval"
    ) -> tuple[RequestStep, bool]:
        """Create a pending step unless one exists for the pair.

        The lookup and the insert run as one critical section per
        ``(request_id, approver_user_id)``. Returns the pending row and
        whether it was created by this call.
        """

    async def find_pending_step(
        self, request_id: str, approver_user_id: str
    ) -> RequestStep | None:
        """Return the pending step for the pair, if any."""

    async def get_request_step(self, step_id: str) -> RequestStep | None:
        """Return one step by id."""

    async def list_request_steps(self, request_id: str) -> list[RequestStep]:
        """Return all steps of a request ordered by ``step_index``."""

    async def update_step_status(
        self, step_id: str, status: str, comment: str | None = None
    ) -> None:
        """Record an approval decision on a step."""

    async def create_notification(self, notification: Notification) -> Notification:
        """Persist a notification."""

    async def list_notifications(self, recipient_id: str | None = None) -> list[Notification]:
        """Return notifications, optionally for one recipient."""

    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        """Append an execution log entry."""

    async def list_execution_log(
        self, request_id: str, workflow_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionLogEntry]:
        """Return log entries for a request, newest first."""

    async def close(self) -> None:
        """Release backend resources."""
