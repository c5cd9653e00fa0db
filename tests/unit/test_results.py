from circleflow.contracts import StepExecutionResult
from circleflow.results import (
    all_integrations_succeeded,
    get_next_approval_step,
    is_workflow_complete,
    is_workflow_rejected,
)


def _result(step_id, step_type, success=True, requires_user_action=False):
    return StepExecutionResult(
        step_id=step_id,
        step_type=step_type,
        success=success,
        requires_user_action=requires_user_action,
    )


def test_helper_predicates():
    results = [
        _result("sync", "integration"),
        _result("notify", "notification", success=False),
        _result("mgr", "approval", requires_user_action=True),
    ]
    assert all_integrations_succeeded(results)
    assert get_next_approval_step(results).step_id == "mgr"
    assert not is_workflow_complete(results)
    assert not is_workflow_rejected(results)

    results.append(_result("post", "integration", success=False))
    assert not all_integrations_succeeded(results)


def test_sentinel_predicates():
    assert is_workflow_complete([StepExecutionResult.complete()])
    assert is_workflow_rejected([StepExecutionResult.rejected()])
    assert get_next_approval_step([]) is None
    assert all_integrations_succeeded([])
