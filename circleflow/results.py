"""Pure helper predicates over a sequence of step results."""

from __future__ import annotations

from typing import Iterable, Optional

from .constants import WORKFLOW_COMPLETE, WORKFLOW_REJECTED
from .contracts import StepExecutionResult


def all_integrations_succeeded(results: Iterable[StepExecutionResult]) -> bool:
    """Check if all integration steps completed successfully."""
    return all(r.success for r in results if r.step_type == "integration")


def get_next_approval_step(
    results: Iterable[StepExecutionResult],
) -> Optional[StepExecutionResult]:
    """Get the next pending approval step."""
    for result in results:
        if result.step_type == "approval" and result.requires_user_action:
            return result
    return None


def is_workflow_complete(results: Iterable[StepExecutionResult]) -> bool:
    return any(r.step_id == WORKFLOW_COMPLETE for r in results)


def is_workflow_rejected(results: Iterable[StepExecutionResult]) -> bool:
    return any(r.step_id == WORKFLOW_REJECTED for r in results)


__all__ = [
    "all_integrations_succeeded",
    "get_next_approval_step",
    "is_workflow_complete",
    "is_workflow_rejected",
]
