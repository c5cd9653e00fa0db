from circleflow.constants import WORKFLOW_COMPLETE, WORKFLOW_REJECTED
from circleflow.contracts import (
    ApprovalStep,
    ConditionStep,
    IntegrationStep,
    StepExecutionResult,
    TerminalStep,
    UnsupportedStep,
    WorkflowDefinition,
)


def _definition():
    return WorkflowDefinition.model_validate(
        {
            "id": "wf-1",
            "name": "Purchase",
            "steps": [
                {"id": "mgr", "type": "approval", "approverRule": {"kind": "manager"}},
                {
                    "id": "sync",
                    "type": "integration",
                    "target": {"provider": "n8n", "config": {"workflowId": "sync"}},
                    "fallback": "continue",
                },
                {"id": "route", "type": "condition", "onTrue": "done", "onFalse": 1},
                {"id": "legacy", "type": "form", "fields": ["a"]},
                {"id": "done", "type": "terminal"},
            ],
            "settings": {"defaultApproverId": "u-1", "customFlag": True},
        }
    )


def test_steps_parse_into_their_variants():
    definition = _definition()
    kinds = [type(step) for step in definition.steps]
    assert kinds == [ApprovalStep, IntegrationStep, ConditionStep, UnsupportedStep, TerminalStep]
    assert definition.steps[1].fallback == "continue"
    assert definition.steps[3].type == "form"
    assert definition.settings.default_approver_id == "u-1"


def test_index_of_resolves_ids_and_indexes():
    definition = _definition()
    assert definition.index_of("done") == 4
    assert definition.index_of(1) == 1
    assert definition.index_of("2") == 2
    assert definition.index_of(9) is None
    assert definition.index_of("nope") is None
    assert definition.has_approval_steps()


def test_definition_round_trips_through_camel_case_json():
    definition = _definition()
    again = WorkflowDefinition.model_validate_json(definition.model_dump_json(by_alias=True))
    assert again == definition


def test_sentinel_results():
    complete = StepExecutionResult.complete()
    rejected = StepExecutionResult.rejected()
    assert complete.step_id == WORKFLOW_COMPLETE and complete.success
    assert rejected.step_id == WORKFLOW_REJECTED and not rejected.success
    assert complete.is_terminal() and rejected.is_terminal()
    dumped = complete.model_dump(by_alias=True)
    assert dumped["stepId"] == WORKFLOW_COMPLETE
    assert dumped["requiresUserAction"] is False
