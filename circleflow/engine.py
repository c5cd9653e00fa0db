"""Workflow execution engine.

The engine walks a workflow definition for one request, delegating every
step to :class:`~circleflow.execute.StepExecutor`. A run stops at the first
step that needs a human decision; the caller later resumes it with
:meth:`WorkflowEngine.continue_workflow`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from .approvals import ApprovalService
from .conditions import build_scope, evaluate_conditions
from .constants import WORKFLOW_RESULTS_KEY
from .contracts import (
    ApprovalStep,
    CamelModel,
    ConditionStep,
    ExecutionContext,
    IntegrationStep,
    StepExecutionResult,
    WorkflowDefinition,
)
from .errors import InvalidInputError, NotFoundError
from .execute import StepExecutor
from .integrations import IntegrationRunner
from .persistence import (
    CircleRepository,
    ExecutionLogEntry,
    Request,
    RequestStep,
)

logger = logging.getLogger(__name__)


class WorkflowStatus(CamelModel):
    """Read-only view of a request's progress through a workflow."""

    workflow_id: str
    request_id: str
    status: str
    steps: List[RequestStep] = Field(default_factory=list)
    executions: List[ExecutionLogEntry] = Field(default_factory=list)


class WorkflowEngine:
    def __init__(
        self,
        repository: CircleRepository,
        executor: Optional[StepExecutor] = None,
        approvals: Optional[ApprovalService] = None,
        integrations: Optional[IntegrationRunner] = None,
    ) -> None:
        self._repository = repository
        self._approvals = approvals or ApprovalService(repository)
        self._executor = executor or StepExecutor(
            repository, integrations or IntegrationRunner(), self._approvals
        )

    async def start_workflow(
        self,
        workflow_id: str,
        request_id: str,
        request_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> List[StepExecutionResult]:
        """Run a workflow from its first step until it halts or finishes."""
        workflow, request = await self._load(workflow_id, request_id)
        context = self._context(workflow, request, request_data or {}, user_id, {})

        logger.info(f"Starting workflow {workflow_id} for request {request_id}")
        results = await self._run_from(workflow, context, 0)
        await self._log(workflow_id, request_id, "started", results)
        return results

    async def continue_workflow(
        self,
        workflow_id: str,
        request_id: str,
        step_index: int,
        approved: bool,
        request_data: Optional[Dict[str, Any]] = None,
        previous_results: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> List[StepExecutionResult]:
        """Resume a workflow after the approval step at ``step_index``."""
        workflow, request = await self._load(workflow_id, request_id)
        previous_results = dict(previous_results or {})
        step = self._check_resume_point(workflow, step_index, previous_results)

        context = self._context(
            workflow, request, request_data or {}, user_id, previous_results
        )
        context.current_step_index = step_index
        await self._settle_approval(step, context, workflow, approved)

        if not approved:
            logger.info(f"Workflow {workflow_id} rejected at step {step_index} for {request_id}")
            results = [StepExecutionResult.rejected()]
            await self._finish(request_id, results[0])
            await self._log(workflow_id, request_id, "rejected", results)
            return results

        logger.info(f"Continuing workflow {workflow_id} at step {step_index + 1} for {request_id}")
        results = await self._run_from(workflow, context, step_index + 1)
        await self._log(workflow_id, request_id, "approved", results)
        return results

    async def get_status(self, workflow_id: str, request_id: str) -> WorkflowStatus:
        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found", details=f"requestId={request_id}")
        steps = await self._repository.list_request_steps(request_id)
        executions = await self._repository.list_execution_log(request_id, workflow_id)
        return WorkflowStatus(
            workflow_id=workflow_id,
            request_id=request_id,
            status=request.status,
            steps=steps,
            executions=executions,
        )

    # ------------------------------------------------------------------
    async def _load(self, workflow_id: str, request_id: str) -> tuple[WorkflowDefinition, Request]:
        if not workflow_id or not request_id:
            raise InvalidInputError("workflowId and requestId are required")
        workflow = await self._repository.get_workflow_definition(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow not found", details=f"workflowId={workflow_id}")
        request = await self._repository.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found", details=f"requestId={request_id}")
        return workflow, request

    def _context(
        self,
        workflow: WorkflowDefinition,
        request: Request,
        request_data: Dict[str, Any],
        user_id: Optional[str],
        previous_results: Dict[str, Any],
    ) -> ExecutionContext:
        return ExecutionContext(
            request_id=request.id,
            workflow_id=workflow.id,
            request_data=request_data,
            user_id=user_id,
            organization_id=request.organization_id,
            creator_id=request.creator_id,
            title=request.title,
            previous_results=previous_results,
        )

    def _check_resume_point(
        self,
        workflow: WorkflowDefinition,
        step_index: int,
        previous_results: Dict[str, Any],
    ) -> ApprovalStep:
        if not 0 <= step_index < len(workflow.steps):
            raise InvalidInputError(
                f"stepIndex {step_index} is outside workflow {workflow.id}"
            )
        step = workflow.steps[step_index]
        if not isinstance(step, ApprovalStep):
            raise InvalidInputError(f"Step {step_index} of workflow {workflow.id} is not an approval step")
        for key in previous_results:
            position = workflow.index_of(key)
            if position is None or position > step_index:
                raise InvalidInputError(
                    f"previousResults key '{key}' does not name a step before stepIndex {step_index}"
                )
        return step

    async def _settle_approval(
        self,
        step: ApprovalStep,
        context: ExecutionContext,
        workflow: WorkflowDefinition,
        approved: bool,
    ) -> None:
        approver_id = await self._approvals.resolve_approver(
            step.approver_rule, context, workflow.settings
        )
        if not approver_id:
            return
        settled = await self._approvals.settle_pending(
            context.request_id, approver_id, "approved" if approved else "rejected"
        )
        if settled is not None:
            logger.debug(f"Settled approval row {settled.id} as {settled.status}")

    async def _run_from(
        self,
        workflow: WorkflowDefinition,
        context: ExecutionContext,
        index: int,
    ) -> List[StepExecutionResult]:
        results: List[StepExecutionResult] = []

        while index < len(workflow.steps):
            step = workflow.steps[index]
            context.current_step_index = index

            if step.conditions and not evaluate_conditions(step.conditions, build_scope(context)):
                logger.debug(f"Skipping step {step.id}: guard conditions not met")
                index += 1
                continue

            result = await self._executor.execute(step, context, workflow)

            if isinstance(step, ConditionStep) and result.success:
                target = (result.data or {}).get("nextIndex")
                if target is None or target <= index:
                    result = result.model_copy(
                        update={
                            "success": False,
                            "error": f"Condition step '{step.id}' may only jump to a later step",
                        }
                    )
                    results.append(result)
                    break
                results.append(result)
                index = target
                continue

            results.append(result)

            if result.is_terminal():
                await self._finish(context.request_id, result)
                return results

            if result.requires_user_action:
                return results

            if not result.success:
                if isinstance(step, IntegrationStep) and step.fallback == "continue":
                    logger.warning(f"Step {step.id} failed, continuing per fallback: {result.error}")
                    index += 1
                    continue
                logger.warning(f"Workflow {workflow.id} halted at step {step.id}: {result.error}")
                return results

            if isinstance(step, IntegrationStep):
                await self._store_output(context, step.id, result.data)

            index += 1
        else:
            complete = StepExecutionResult.complete()
            results.append(complete)
            await self._finish(context.request_id, complete)

        return results

    async def _store_output(self, context: ExecutionContext, step_id: str, data: Any) -> None:
        context.previous_results[step_id] = data
        await self._repository.merge_request_metadata(
            context.request_id, {WORKFLOW_RESULTS_KEY: {step_id: data}}
        )

    async def _finish(self, request_id: str, result: StepExecutionResult) -> None:
        status = "approved" if result.success else "rejected"
        await self._repository.update_request_status(request_id, status)

    async def _log(
        self,
        workflow_id: str,
        request_id: str,
        action: str,
        results: List[StepExecutionResult],
    ) -> None:
        entry = ExecutionLogEntry(
            workflow_id=workflow_id,
            request_id=request_id,
            action=action,
            results=[r.model_dump(by_alias=True, mode="json") for r in results],
        )
        try:
            await self._repository.append_execution_log(entry)
        except Exception as exc:
            logger.error(f"Failed to write execution log for request {request_id}: {exc}")
