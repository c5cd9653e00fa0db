import httpx
import pytest

from circleflow.constants import WORKFLOW_COMPLETE, WORKFLOW_REJECTED
from circleflow.engine import WorkflowEngine
from circleflow.errors import InvalidInputError, NotFoundError
from circleflow.integrations import IntegrationRunner
from circleflow.results import get_next_approval_step, is_workflow_complete
from circleflow.webhooks import WebhookHandler


def _engine(repo, handler=None) -> WorkflowEngine:
    def default(request):
        return httpx.Response(200, json={"erpId": "PO-7"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or default))
    return WorkflowEngine(repo, integrations=IntegrationRunner(http_client=client))


SYNC = {"id": "sync", "type": "integration", "target": {"provider": "n8n", "config": {"slug": "erp"}}}
MANAGER = {"id": "mgr", "type": "approval", "approverRule": {"kind": "manager"}}
FINANCE = {"id": "fin", "type": "approval", "approverRule": {"kind": "role", "value": "finance"}}


@pytest.mark.asyncio
async def test_start_halts_at_first_approval(repo, request_obj, make_workflow):
    await make_workflow([SYNC, MANAGER, FINANCE])
    engine = _engine(repo)

    results = await engine.start_workflow("wf-1", request_obj.id, {"amount": 10})

    assert [r.step_id for r in results] == ["sync", "mgr"]
    assert results[0].data == {"erpId": "PO-7"}
    assert get_next_approval_step(results).data["approverId"] == "u-mgr"

    request = await repo.get_request(request_obj.id)
    assert request.metadata["workflow_results"]["sync"] == {"erpId": "PO-7"}
    assert request.status == "pending_approval"
    [entry] = await repo.list_execution_log(request_obj.id, "wf-1")
    assert entry.action == "started"
    assert entry.results[1]["requiresUserAction"] is True


@pytest.mark.asyncio
async def test_start_does_not_run_steps_after_pending_approval(repo, request_obj, make_workflow):
    post = {"id": "post", "type": "integration", "target": {"provider": "n8n", "config": {"slug": "post"}}}
    await make_workflow([SYNC, MANAGER, post])
    called = []

    def handler(request):
        called.append(request.url.path)
        return httpx.Response(200, json={"ok": True})

    results = await _engine(repo, handler).start_workflow("wf-1", request_obj.id, {})

    assert [r.step_id for r in results] == ["sync", "mgr"]
    assert called == ["/webhook/erp"]
    assert "post" not in (await repo.get_request(request_obj.id)).metadata["workflow_results"]


@pytest.mark.asyncio
async def test_full_approval_flow_completes(repo, request_obj, make_workflow):
    await make_workflow([SYNC, MANAGER, FINANCE])
    engine = _engine(repo)
    await engine.start_workflow("wf-1", request_obj.id, {})

    after_manager = await engine.continue_workflow(
        "wf-1", request_obj.id, 1, True, {}, {"sync": {"erpId": "PO-7"}}
    )
    assert [r.step_id for r in after_manager] == ["fin"]
    assert after_manager[0].requires_user_action

    finished = await engine.continue_workflow("wf-1", request_obj.id, 2, True, {}, {})
    assert is_workflow_complete(finished)
    assert finished[-1].step_id == WORKFLOW_COMPLETE

    assert (await repo.get_request(request_obj.id)).status == "approved"
    steps = await repo.list_request_steps(request_obj.id)
    assert [(s.approver_user_id, s.status) for s in steps] == [
        ("u-mgr", "approved"),
        ("u-fin", "approved"),
    ]
    actions = [e.action for e in await repo.list_execution_log(request_obj.id, "wf-1")]
    assert actions == ["approved", "approved", "started"]


@pytest.mark.asyncio
async def test_rejection_short_circuits(repo, request_obj, make_workflow):
    await make_workflow([MANAGER, SYNC, FINANCE])
    engine = _engine(repo)
    await engine.start_workflow("wf-1", request_obj.id, {})

    results = await engine.continue_workflow("wf-1", request_obj.id, 0, False, {}, {})

    assert len(results) == 1
    assert results[0].step_id == WORKFLOW_REJECTED
    assert not results[0].success
    assert (await repo.get_request(request_obj.id)).status == "rejected"
    [step] = await repo.list_request_steps(request_obj.id)
    assert step.status == "rejected"
    assert "workflow_results" not in (await repo.get_request(request_obj.id)).metadata
    assert (await repo.list_execution_log(request_obj.id))[0].action == "rejected"


@pytest.mark.asyncio
async def test_continue_rejects_inconsistent_resume_points(repo, request_obj, make_workflow):
    await make_workflow([SYNC, MANAGER, FINANCE])
    engine = _engine(repo)

    with pytest.raises(InvalidInputError):
        await engine.continue_workflow("wf-1", request_obj.id, 7, True, {}, {})
    with pytest.raises(InvalidInputError):
        await engine.continue_workflow("wf-1", request_obj.id, 0, True, {}, {})
    with pytest.raises(InvalidInputError):
        await engine.continue_workflow("wf-1", request_obj.id, 1, True, {}, {"fin": {}})
    with pytest.raises(InvalidInputError):
        await engine.continue_workflow("wf-1", request_obj.id, 1, True, {}, {"nope": {}})


@pytest.mark.asyncio
async def test_unknown_workflow_or_request(repo, request_obj, make_workflow):
    await make_workflow([MANAGER])
    engine = _engine(repo)
    with pytest.raises(NotFoundError, match="Workflow not found"):
        await engine.start_workflow("missing", request_obj.id, {})
    with pytest.raises(NotFoundError, match="Request not found"):
        await engine.start_workflow("wf-1", "missing", {})
    with pytest.raises(InvalidInputError):
        await engine.start_workflow("", request_obj.id, {})


@pytest.mark.asyncio
async def test_failed_integration_halts_unless_fallback(repo, request_obj, make_workflow):
    def failing(request):
        return httpx.Response(502)

    await make_workflow([SYNC, MANAGER])
    results = await _engine(repo, failing).start_workflow("wf-1", request_obj.id, {})
    assert [r.step_id for r in results] == ["sync"]
    assert results[0].error == "HTTP 502: Bad Gateway"
    assert await repo.list_request_steps(request_obj.id) == []

    await make_workflow([{**SYNC, "fallback": "continue"}, MANAGER], id="wf-2")
    results = await _engine(repo, failing).start_workflow("wf-2", request_obj.id, {})
    assert [r.step_id for r in results] == ["sync", "mgr"]
    assert "workflow_results" not in (await repo.get_request(request_obj.id)).metadata


@pytest.mark.asyncio
async def test_condition_jumps_forward_and_guards_skip(repo, request_obj, make_workflow):
    await make_workflow(
        [
            {"id": "route", "type": "condition",
             "expression": [{"field": "amount", "operator": "less_than", "value": 100}],
             "onTrue": "done"},
            {**FINANCE, "conditions": [{"field": "amount", "operator": "greater_than", "value": 10000}]},
            MANAGER,
            {"id": "done", "type": "terminal"},
        ]
    )
    engine = _engine(repo)

    small = await engine.start_workflow("wf-1", request_obj.id, {"amount": 5})
    assert [r.step_id for r in small] == ["route", WORKFLOW_COMPLETE]
    assert (await repo.get_request(request_obj.id)).status == "approved"

    medium = await engine.start_workflow("wf-1", request_obj.id, {"amount": 500})
    # the finance guard fails, so the manager is next
    assert [r.step_id for r in medium] == ["route", "mgr"]


@pytest.mark.asyncio
async def test_backward_condition_jump_is_refused(repo, request_obj, make_workflow):
    await make_workflow(
        [
            {"id": "first", "type": "notification", "recipientRule": {"value": "u-fin"},
             "template": "hi"},
            {"id": "loop", "type": "condition", "onTrue": "first", "onFalse": "first"},
            MANAGER,
        ]
    )
    results = await _engine(repo).start_workflow("wf-1", request_obj.id, {})
    assert [r.step_id for r in results] == ["first", "loop"]
    assert not results[-1].success
    assert "later step" in results[-1].error


@pytest.mark.asyncio
async def test_terminal_rejection_sets_status(repo, request_obj, make_workflow):
    await make_workflow([{"id": "deny", "type": "terminal", "outcome": "rejected"}, MANAGER])
    results = await _engine(repo).start_workflow("wf-1", request_obj.id, {})
    assert [r.step_id for r in results] == [WORKFLOW_REJECTED]
    assert (await repo.get_request(request_obj.id)).status == "rejected"


@pytest.mark.asyncio
async def test_log_failures_do_not_fail_the_run(repo, request_obj, make_workflow, monkeypatch):
    async def broken(entry):
        raise RuntimeError("log store down")

    monkeypatch.setattr(repo, "append_execution_log", broken)
    await make_workflow([MANAGER])
    results = await _engine(repo).start_workflow("wf-1", request_obj.id, {})
    assert results[0].requires_user_action


@pytest.mark.asyncio
async def test_get_status(repo, request_obj, make_workflow):
    await make_workflow([MANAGER])
    engine = _engine(repo)
    await engine.start_workflow("wf-1", request_obj.id, {})

    status = await engine.get_status("wf-1", request_obj.id)
    assert status.status == "pending_approval"
    assert [s.approver_user_id for s in status.steps] == ["u-mgr"]
    assert [e.action for e in status.executions] == ["started"]
    dumped = status.model_dump(by_alias=True, mode="json")
    assert dumped["requestId"] == request_obj.id

    with pytest.raises(NotFoundError):
        await engine.get_status("wf-1", "missing")


@pytest.mark.asyncio
async def test_workflow_without_approvals_completes(repo, request_obj, make_workflow):
    await make_workflow(
        [SYNC, {"id": "tell", "type": "notification", "recipientRule": {"kind": "manager"},
                "template": "Request {request_id} synced"}]
    )
    results = await _engine(repo).start_workflow("wf-1", request_obj.id, {})

    assert [r.step_id for r in results] == ["sync", "tell", WORKFLOW_COMPLETE]
    assert (await repo.get_request(request_obj.id)).status == "approved"
    [notification] = await repo.list_notifications("u-mgr")
    assert notification.message == f"Request {request_obj.id} synced"


@pytest.mark.asyncio
async def test_engine_and_webhook_metadata_coexist(repo, request_obj, make_workflow):
    await make_workflow([SYNC, MANAGER])
    await _engine(repo).start_workflow("wf-1", request_obj.id, {})
    await WebhookHandler(repo).handle(
        {"event": "workflow_complete", "requestId": request_obj.id, "workflowSlug": "erp"}
    )

    metadata = (await repo.get_request(request_obj.id)).metadata
    assert metadata["workflow_results"] == {"sync": {"erpId": "PO-7"}}
    assert metadata["n8n_completed"] is True
