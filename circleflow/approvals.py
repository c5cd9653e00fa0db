"""Approval materialization, approver resolution and approval decisions."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel

from .conditions import resolve_path
from .contracts import ApproverRule, ExecutionContext, WorkflowSettings
from .errors import (
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
)
from .persistence import CircleRepository, Notification, Request, RequestStep

logger = logging.getLogger(__name__)

Decision = Literal["approved", "rejected"]


class MaterializeResult(BaseModel):
    """Outcome of materializing a pending approval."""

    success: bool = True
    message: str
    approver_id: str
    approver_name: str
    step: RequestStep
    idempotent: bool = False


class DecisionResult(BaseModel):
    success: bool = True
    message: str
    decision: Decision
    step: RequestStep


class ApprovalService:
    """Owns the lifecycle of pending ``RequestStep`` rows.

    ``materialize_approval`` is safe under at-least-once delivery: a second
    call for the same request and approver returns the existing pending row
    and sends no second notification.
    """

    def __init__(self, repository: CircleRepository) -> None:
        self._repository = repository

    async def resolve_approver(
        self,
        rule: ApproverRule,
        context: ExecutionContext,
        settings: Optional[WorkflowSettings] = None,
    ) -> Optional[str]:
        """Return the user id designated by ``rule``, or the workflow default."""
        approver_id = await self._resolve_rule(rule, context)
        if approver_id is None and settings is not None:
            approver_id = settings.default_approver_id
        return approver_id

    async def _resolve_rule(
        self, rule: ApproverRule, context: ExecutionContext
    ) -> Optional[str]:
        if rule.kind == "specific_user":
            return rule.value or None
        if rule.kind == "role":
            if not rule.value:
                return None
            user = await self._repository.find_user_by_role(
                context.organization_id or "", rule.value
            )
            return user.id if user else None
        if rule.kind == "manager":
            creator = await self._repository.get_user(context.creator_id or "")
            return creator.manager_id if creator else None
        if rule.kind == "department_head":
            creator = await self._repository.get_user(context.creator_id or "")
            if creator is None or not creator.department_id:
                return None
            head = await self._repository.find_department_head(
                creator.organization_id, creator.department_id
            )
            return head.id if head else None
        if rule.kind == "dynamic_field":
            if not rule.value:
                return None
            value = resolve_path(context.request_data, rule.value)
            return str(value) if value else None
        return None

    # ------------------------------------------------------------------
    async def materialize_approval(
        self, request_id: str, approver_id: str
    ) -> MaterializeResult:
        """Create a pending approval for ``approver_id`` unless one exists."""
        if not request_id or not approver_id:
            raise InvalidInputError("requestId and approverId are required")

        approver = await self._repository.get_user(approver_id)
        if approver is None:
            raise NotFoundError("Approver not found", details=f"approverId={approver_id}")
        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found", details=f"requestId={request_id}")

        try:
            step, created = await self._repository.create_pending_step(
                request_id, approver.id, step_type="approval"
            )
        except Exception as exc:
            logger.error(f"Failed to create approval step for request {request_id}: {exc}")
            raise PersistenceError("Failed to create approval record", details=str(exc)) from exc

        if not created:
            logger.info(
                f"Approval already pending for request {request_id} and approver {approver.id}"
            )
            return MaterializeResult(
                message="Approval already pending for this approver",
                approver_id=approver.id,
                approver_name=approver.display_name,
                step=step,
                idempotent=True,
            )

        try:
            await self._repository.update_request_status(request_id, "pending_approval")
        except Exception as exc:
            logger.error(f"Failed to update request status for {request_id}: {exc}")

        await self._notify(
            request,
            recipient_id=approver.id,
            organization_id=approver.organization_id,
            sender_id=request.creator_id,
            kind="task",
            title="Approval Required",
            message=f'A request "{request.title}" requires your approval.',
            action_label="Review Request",
        )
        logger.info(
            f"Created pending approval step {step.step_index} for request {request_id}"
        )
        return MaterializeResult(
            message="Approval notification sent",
            approver_id=approver.id,
            approver_name=approver.display_name,
            step=step,
        )

    async def settle_pending(
        self,
        request_id: str,
        approver_id: str,
        decision: Decision,
        comment: Optional[str] = None,
    ) -> Optional[RequestStep]:
        """Mark the approver's pending row with ``decision`` if one is open."""
        step = await self._repository.find_pending_step(request_id, approver_id)
        if step is None:
            return None
        await self._repository.update_step_status(step.id, decision, comment)
        return step.model_copy(update={"status": decision, "comment": comment})

    async def record_decision(
        self,
        request_id: str,
        step_id: str,
        user_id: str,
        decision: Decision,
        comment: Optional[str] = None,
    ) -> DecisionResult:
        """Apply a human approve/reject action to a pending step."""
        if not request_id or not step_id or not user_id:
            raise InvalidInputError("requestId, stepId and user are required")
        if decision not in ("approved", "rejected"):
            raise InvalidInputError('action must be "approve" or "reject"')

        step = await self._repository.get_request_step(step_id)
        if step is None or step.request_id != request_id:
            raise NotFoundError(
                "Approval step not found - step may not exist or does not belong to this request"
            )
        if step.approver_user_id != user_id:
            raise ForbiddenError("You are not authorized to act on this approval")
        if step.status != "pending":
            raise InvalidInputError("This approval step is no longer pending")
        if decision == "rejected" and not (comment or "").strip():
            raise InvalidInputError("Comment is required for rejection")

        await self._repository.update_step_status(step.id, decision, comment)
        step = step.model_copy(update={"status": decision, "comment": comment})

        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        approver = await self._repository.get_user(user_id)
        approver_name = approver.display_name if approver and approver.display_name else "an approver"

        if decision == "rejected":
            await self._repository.update_request_status(request_id, "rejected")
            await self._notify_requester(
                request, f'Your request "{request.title}" was rejected by {approver_name}'
            )
            return DecisionResult(message="Request rejected", decision=decision, step=step)

        remaining = [
            s for s in await self._repository.list_request_steps(request_id) if s.status == "pending"
        ]
        if remaining:
            await self._notify_requester(
                request,
                f'Your request "{request.title}" was approved by {approver_name} '
                f"(Step {step.step_index}). Awaiting next approval.",
            )
            return DecisionResult(message="Approved", decision=decision, step=step)

        if request.workflow_id:
            # the engine decides completion for workflow-driven requests
            await self._repository.update_request_status(request_id, "in_review")
            message = "Approved - workflow may continue"
        else:
            await self._repository.update_request_status(request_id, "approved")
            message = "Request fully approved"
        await self._notify_requester(
            request, f'Your request "{request.title}" has been approved by {approver_name}!'
        )
        return DecisionResult(message=message, decision=decision, step=step)

    # ------------------------------------------------------------------
    async def _notify_requester(self, request: Request, message: str) -> None:
        await self._notify(
            request,
            recipient_id=request.creator_id,
            organization_id=request.organization_id,
            sender_id=None,
            kind="info",
            title="Request Update",
            message=message,
            action_label="View Request",
        )

    async def _notify(
        self,
        request: Request,
        recipient_id: str,
        organization_id: str,
        sender_id: Optional[str],
        kind: str,
        title: str,
        message: str,
        action_label: str,
    ) -> Optional[Notification]:
        """Write a notification row; failures are logged and ignored."""
        notification = Notification(
            organization_id=organization_id,
            recipient_id=recipient_id,
            sender_id=sender_id,
            type=kind,
            title=title,
            message=message,
            metadata={
                "request_id": request.id,
                "action_label": action_label,
                "action_url": f"/requests/{request.id}",
            },
        )
        try:
            return await self._repository.create_notification(notification)
        except Exception as exc:
            logger.error(f"Failed to create notification for {recipient_id}: {exc}")
            return None
