"""Data models for persisted request and execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

RequestStatus = Literal[
    "draft",
    "pending_approval",
    "in_review",
    "approved",
    "rejected",
    "withdrawn",
    "cancelled",
]
StepStatus = Literal["pending", "approved", "rejected"]


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Request(BaseModel):
    """A user-submitted item routed through a workflow."""

    id: str = Field(default_factory=_new_id)
    creator_id: str
    organization_id: str
    title: str = ""
    status: RequestStatus = "draft"
    metadata: dict[str, Any] = Field(default_factory=dict)
    workflow_id: Optional[str] = None


class RequestStep(BaseModel):
    """A materialized approval gate for one request and approver."""

    id: str = Field(default_factory=_new_id)
    request_id: str
    step_index: int
    step_type: str = "approval"
    approver_user_id: Optional[str] = None
    status: StepStatus = "pending"
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None


class AppUser(BaseModel):
    """Directory entry for a user who can approve or be notified."""

    id: str
    organization_id: str
    display_name: str = ""
    email: Optional[str] = None
    role: Optional[str] = None
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    is_department_head: bool = False


class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    recipient_id: str
    sender_id: Optional[str] = None
    type: str = "info"
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionLogEntry(BaseModel):
    """Append-only record of an engine run or an automation callback."""

    id: Optional[int] = None
    workflow_id: Optional[str] = None
    request_id: str
    action: str
    results: Any = None
    created_at: datetime = Field(default_factory=utcnow)
