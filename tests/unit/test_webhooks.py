import pytest

from circleflow.webhooks import WebhookHandler, WebhookUnauthorized


@pytest.mark.asyncio
async def test_workflow_complete_merges_metadata(repo, request_obj):
    await repo.merge_request_metadata(request_obj.id, {"workflow_results": {"sync": 1}})
    handler = WebhookHandler(repo)

    ack = await handler.handle(
        {"event": "workflow_complete", "requestId": request_obj.id,
         "workflowSlug": "erp", "data": {"po": "PO-1"}}
    )

    assert ack.received and ack.event == "workflow_complete"
    metadata = (await repo.get_request(request_obj.id)).metadata
    assert metadata["n8n_completed"] is True
    assert metadata["n8n_workflow"] == "erp"
    assert metadata["n8n_result"] == {"po": "PO-1"}
    assert "n8n_completed_at" in metadata
    assert metadata["workflow_results"] == {"sync": 1}


@pytest.mark.asyncio
async def test_error_event_records_failure(repo, request_obj):
    await WebhookHandler(repo).handle(
        {"event": "error", "requestId": request_obj.id, "workflowSlug": "erp", "data": "boom"}
    )
    metadata = (await repo.get_request(request_obj.id)).metadata
    assert metadata["n8n_error"] is True
    assert metadata["n8n_error_data"] == "boom"


@pytest.mark.asyncio
async def test_step_complete_appends_log(repo, request_obj):
    await WebhookHandler(repo).handle(
        {"event": "step_complete", "requestId": request_obj.id, "data": {"step": 2}}
    )
    [entry] = await repo.list_execution_log(request_obj.id)
    assert entry.action == "n8n_step_complete"
    assert entry.results == {"step": 2}


@pytest.mark.asyncio
async def test_unknown_custom_and_orphan_events_are_acknowledged(repo, request_obj):
    handler = WebhookHandler(repo)
    for payload in (
        {"event": "something_new", "requestId": request_obj.id},
        {"event": "custom", "data": {"x": 1}},
        {"event": "workflow_complete"},
        {"event": "workflow_complete", "requestId": "missing"},
    ):
        ack = await handler.handle(payload)
        assert ack.received
    assert (await repo.get_request(request_obj.id)).metadata == {}


@pytest.mark.asyncio
async def test_store_errors_are_swallowed(repo, request_obj, monkeypatch):
    async def broken(*args):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "merge_request_metadata", broken)
    ack = await WebhookHandler(repo).handle(
        {"event": "workflow_complete", "requestId": request_obj.id}
    )
    assert ack.received


@pytest.mark.asyncio
async def test_secret_mismatch_is_rejected_without_mutation(repo, request_obj):
    handler = WebhookHandler(repo, secret="s3cret")
    with pytest.raises(WebhookUnauthorized):
        await handler.handle(
            {"event": "workflow_complete", "requestId": request_obj.id, "secret": "wrong"}
        )
    with pytest.raises(WebhookUnauthorized):
        await handler.handle({"event": "workflow_complete", "requestId": request_obj.id})
    assert (await repo.get_request(request_obj.id)).metadata == {}

    await handler.handle(
        {"event": "workflow_complete", "requestId": request_obj.id, "secret": "s3cret"}
    )
    assert (await repo.get_request(request_obj.id)).metadata["n8n_completed"] is True


@pytest.mark.asyncio
async def test_loosely_typed_fields_are_coerced(repo, request_obj):
    handler = WebhookHandler(repo, secret="s3cret")
    ack = await handler.handle({"event": 7, "requestId": 42, "secret": "s3cret"})
    assert ack.event == "7"

    with pytest.raises(WebhookUnauthorized):
        await handler.handle({"event": ["bad"], "requestId": {"x": 1}, "secret": 123})
