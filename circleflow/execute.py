"""Step execution for circleflow workflows."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Type

from .approvals import ApprovalService
from .conditions import build_scope, evaluate_conditions
from .constants import UNSUPPORTED_STEP_TYPE
from .contracts import (
    ApprovalStep,
    BaseStep,
    ConditionStep,
    ExecutionContext,
    IntegrationStep,
    NotificationStep,
    StepExecutionResult,
    TerminalStep,
    WorkflowDefinition,
)
from .errors import CircleflowError
from .integrations import IntegrationError, IntegrationRunner
from .persistence import CircleRepository, Notification

logger = logging.getLogger(__name__)

StepHandler = Callable[[Any, ExecutionContext, WorkflowDefinition], Awaitable[StepExecutionResult]]


class _TemplateScope(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class StepExecutor:
    """Executes exactly one step and reports a :class:`StepExecutionResult`.

    The executor never moves the cursor; the engine decides which step runs
    next based on the returned result.
    """

    def __init__(
        self,
        repository: CircleRepository,
        integrations: IntegrationRunner,
        approvals: ApprovalService | None = None,
    ) -> None:
        self._repository = repository
        self._integrations = integrations
        self._approvals = approvals or ApprovalService(repository)
        self._handlers: Dict[Type[BaseStep], StepHandler] = {
            ApprovalStep: self._execute_approval,
            IntegrationStep: self._execute_integration,
            ConditionStep: self._execute_condition,
            NotificationStep: self._execute_notification,
            TerminalStep: self._execute_terminal,
        }

    async def execute(
        self,
        step: BaseStep,
        context: ExecutionContext,
        workflow: WorkflowDefinition,
    ) -> StepExecutionResult:
        handler = self._handlers.get(type(step))
        if handler is None:
            step_type = getattr(step, "type", "") or "unknown"
            logger.warning(f"Step {step.id} has unsupported type '{step_type}'")
            return StepExecutionResult(
                step_id=step.id,
                step_type=step_type,
                success=False,
                error=UNSUPPORTED_STEP_TYPE,
            )
        return await handler(step, context, workflow)

    # ------------------------------------------------------------------
    async def _execute_approval(
        self, step: ApprovalStep, context: ExecutionContext, workflow: WorkflowDefinition
    ) -> StepExecutionResult:
        approver_id = await self._approvals.resolve_approver(
            step.approver_rule, context, workflow.settings
        )
        if not approver_id:
            return StepExecutionResult(
                step_id=step.id,
                step_type="approval",
                success=False,
                error=f"No approver could be resolved for step '{step.name or step.id}'",
            )

        try:
            outcome = await self._approvals.materialize_approval(context.request_id, approver_id)
        except CircleflowError as exc:
            return StepExecutionResult(
                step_id=step.id, step_type="approval", success=False, error=exc.message
            )

        return StepExecutionResult(
            step_id=step.id,
            step_type="approval",
            success=True,
            requires_user_action=True,
            message="Approval step pending user action",
            data={
                "approverId": outcome.approver_id,
                "approverName": outcome.approver_name,
                "requestStepId": outcome.step.id,
                "requestStepIndex": outcome.step.step_index,
                "idempotent": outcome.idempotent,
            },
            next_step_index=context.current_step_index,
        )

    async def _execute_integration(
        self, step: IntegrationStep, context: ExecutionContext, workflow: WorkflowDefinition
    ) -> StepExecutionResult:
        provider = step.target.provider
        try:
            data = await self._integrations.run(step, context)
        except IntegrationError as exc:
            logger.error(f"Error executing {provider} integration for step {step.id}: {exc}")
            return StepExecutionResult(
                step_id=step.id,
                step_type="integration",
                success=False,
                provider=provider,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception(f"Unexpected failure in {provider} integration for step {step.id}")
            return StepExecutionResult(
                step_id=step.id,
                step_type="integration",
                success=False,
                provider=provider,
                error=str(exc) or "Unknown error",
            )

        return StepExecutionResult(
            step_id=step.id,
            step_type="integration",
            success=True,
            provider=provider,
            message=f"{provider} integration executed successfully",
            data=data,
        )

    async def _execute_condition(
        self, step: ConditionStep, context: ExecutionContext, workflow: WorkflowDefinition
    ) -> StepExecutionResult:
        outcome = evaluate_conditions(step.expression, build_scope(context))
        target = step.on_true if outcome else step.on_false
        if target is None:
            next_index = context.current_step_index + 1
        else:
            next_index = workflow.index_of(target)
        return StepExecutionResult(
            step_id=step.id,
            step_type="condition",
            success=True,
            message=f"Condition evaluated to {outcome}",
            data={"result": outcome, "target": target, "nextIndex": next_index},
        )

    async def _execute_notification(
        self, step: NotificationStep, context: ExecutionContext, workflow: WorkflowDefinition
    ) -> StepExecutionResult:
        recipient_id = await self._approvals.resolve_approver(step.recipient_rule, context)
        if not recipient_id:
            return StepExecutionResult(
                step_id=step.id,
                step_type="notification",
                success=False,
                error="No notification recipient could be resolved",
            )

        scope = _TemplateScope(context.request_data)
        scope.update(request_id=context.request_id, title=context.title)
        try:
            message = step.template.format_map(scope)
        except (ValueError, IndexError, AttributeError):
            message = step.template

        notification = Notification(
            organization_id=context.organization_id or "",
            recipient_id=recipient_id,
            sender_id=context.user_id,
            type="info",
            title=step.title,
            message=message,
            metadata={
                "request_id": context.request_id,
                "action_label": "View Request",
                "action_url": f"/requests/{context.request_id}",
            },
        )
        try:
            stored = await self._repository.create_notification(notification)
        except Exception as exc:
            logger.error(f"Failed to create notification for step {step.id}: {exc}")
            return StepExecutionResult(
                step_id=step.id,
                step_type="notification",
                success=False,
                error=f"Failed to create notification: {exc}",
            )
        return StepExecutionResult(
            step_id=step.id,
            step_type="notification",
            success=True,
            message="Notification created",
            data={"notificationId": stored.id, "recipientId": recipient_id},
        )

    async def _execute_terminal(
        self, step: TerminalStep, context: ExecutionContext, workflow: WorkflowDefinition
    ) -> StepExecutionResult:
        if step.outcome == "rejected":
            return StepExecutionResult.rejected(f"Workflow rejected at step '{step.name or step.id}'")
        return StepExecutionResult.complete(f"Workflow completed at step '{step.name or step.id}'")


__all__ = ["StepExecutor"]
