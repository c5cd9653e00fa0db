"""Core workflow contracts: step definitions, workflow definitions and results."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel

from .constants import WORKFLOW_COMPLETE, WORKFLOW_REJECTED

STEP_TYPES = ("approval", "integration", "condition", "notification", "terminal")


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, emits camelCase with ``by_alias``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepCondition(CamelModel):
    """A single field comparison evaluated against the execution context."""

    field: str
    operator: str = "equals"
    value: Any = None
    value2: Any = None


class ApproverRule(CamelModel):
    """How to find the user responsible for an approval or notification."""

    kind: Literal[
        "specific_user", "role", "manager", "department_head", "dynamic_field"
    ] = "specific_user"
    value: Optional[str] = None


class EscalationPolicy(CamelModel):
    enabled: bool = False
    hours: int = 48
    escalate_to: Optional[str] = None


class IntegrationTarget(CamelModel):
    """The external action an integration step invokes."""

    provider: str
    action: str = "trigger"
    config: Dict[str, Any] = Field(default_factory=dict)


class BaseStep(CamelModel):
    id: str
    name: str = ""
    conditions: List[StepCondition] = Field(default_factory=list)


class ApprovalStep(BaseStep):
    type: Literal["approval"] = "approval"
    approver_rule: ApproverRule = Field(default_factory=ApproverRule)
    escalation: Optional[EscalationPolicy] = None
    require_comment: bool = False


class IntegrationStep(BaseStep):
    type: Literal["integration"] = "integration"
    target: IntegrationTarget
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    fallback: Optional[Literal["continue"]] = None


class ConditionStep(BaseStep):
    type: Literal["condition"] = "condition"
    expression: List[StepCondition] = Field(default_factory=list)
    on_true: Union[int, str, None] = None
    on_false: Union[int, str, None] = None


class NotificationStep(BaseStep):
    type: Literal["notification"] = "notification"
    recipient_rule: ApproverRule = Field(default_factory=ApproverRule)
    template: str = ""
    title: str = "Request Update"


class TerminalStep(BaseStep):
    type: Literal["terminal"] = "terminal"
    outcome: Literal["complete", "rejected"] = "complete"


class UnsupportedStep(BaseStep):
    """Placeholder for step types this engine does not know how to run."""

    model_config = ConfigDict(extra="allow")

    type: str = ""


def _step_tag(value: Any) -> str:
    step_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return step_type if step_type in STEP_TYPES else "unsupported"


StepDefinition = Annotated[
    Union[
        Annotated[ApprovalStep, Tag("approval")],
        Annotated[IntegrationStep, Tag("integration")],
        Annotated[ConditionStep, Tag("condition")],
        Annotated[NotificationStep, Tag("notification")],
        Annotated[TerminalStep, Tag("terminal")],
        Annotated[UnsupportedStep, Tag("unsupported")],
    ],
    Discriminator(_step_tag),
]


class WorkflowSettings(CamelModel):
    model_config = ConfigDict(extra="allow")

    allow_withdraw: bool = True
    expiration_days: int = 30
    notify_requester_on_each_step: bool = False
    default_approver_id: Optional[str] = None


class WorkflowDefinition(CamelModel):
    """An ordered list of steps applied to a request."""

    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    is_active: bool = True

    def index_of(self, step_ref: Union[int, str, None]) -> Optional[int]:
        """Resolve a step id or 0-based index to an index in ``steps``."""
        if step_ref is None:
            return None
        if isinstance(step_ref, int):
            return step_ref if 0 <= step_ref < len(self.steps) else None
        for index, step in enumerate(self.steps):
            if step.id == step_ref:
                return index
        if step_ref.isdigit():
            return self.index_of(int(step_ref))
        return None

    def has_approval_steps(self) -> bool:
        return any(isinstance(step, ApprovalStep) for step in self.steps)


class ExecutionContext(BaseModel):
    """Context reconstructed for every start/continue call."""

    request_id: str
    workflow_id: str
    request_data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    creator_id: Optional[str] = None
    title: str = ""
    current_step_index: int = 0
    previous_results: Dict[str, Any] = Field(default_factory=dict)


class StepExecutionResult(CamelModel):
    """Outcome of executing a single step."""

    step_id: str
    step_type: str
    success: bool
    requires_user_action: bool = False
    provider: Optional[str] = None
    message: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    next_step_index: Optional[int] = None

    @classmethod
    def complete(cls, message: str = "Workflow completed - no more steps") -> "StepExecutionResult":
        return cls(step_id=WORKFLOW_COMPLETE, step_type="terminal", success=True, message=message)

    @classmethod
    def rejected(cls, message: str = "Workflow rejected at approval step") -> "StepExecutionResult":
        return cls(step_id=WORKFLOW_REJECTED, step_type="terminal", success=False, message=message)

    def is_terminal(self) -> bool:
        return self.step_id in (WORKFLOW_COMPLETE, WORKFLOW_REJECTED)
