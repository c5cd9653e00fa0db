"""circleflow: approval workflow execution for The Circle."""

from .approvals import ApprovalService
from .client import WorkflowClient
from .contracts import ExecutionContext, StepExecutionResult, WorkflowDefinition
from .engine import WorkflowEngine, WorkflowStatus
from .execute import StepExecutor
from .integrations import IntegrationRunner, N8nClient
from .persistence import get_repository
from .results import (
    all_integrations_succeeded,
    get_next_approval_step,
    is_workflow_complete,
    is_workflow_rejected,
)
from .webhooks import WebhookHandler

__version__ = "0.1.0"
__all__ = [
    "ApprovalService",
    "ExecutionContext",
    "IntegrationRunner",
    "N8nClient",
    "StepExecutionResult",
    "StepExecutor",
    "WebhookHandler",
    "WorkflowClient",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowStatus",
    "all_integrations_succeeded",
    "get_next_approval_step",
    "get_repository",
    "is_workflow_complete",
    "is_workflow_rejected",
]
