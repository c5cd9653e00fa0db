import json

import httpx
import pytest

from circleflow.client import WorkflowClient
from circleflow.config import ClientConfig
from circleflow.errors import ClientError, ClientTimeoutError


def _client(handler) -> WorkflowClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WorkflowClient("http://circle.test/", timeout=5, http_client=http)


@pytest.mark.asyncio
async def test_start_workflow_parses_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "message": "Workflow started",
                "results": [
                    {"stepId": "mgr", "stepType": "approval", "success": True,
                     "requiresUserAction": True, "data": {"approverId": "u-mgr"}}
                ],
            },
        )

    results = await _client(handler).start_workflow("wf-1", "r-1", {"amount": 3})

    assert seen["url"] == "http://circle.test/api/workflows/execute"
    assert seen["body"] == {
        "action": "start", "workflowId": "wf-1", "requestId": "r-1", "requestData": {"amount": 3}
    }
    assert results[0].step_id == "mgr"
    assert results[0].requires_user_action


@pytest.mark.asyncio
async def test_continue_and_status_payloads():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"results": [], "steps": [], "executions": []})

    client = _client(handler)
    await client.continue_workflow("wf-1", "r-1", 2, False, {}, {"sync": {"a": 1}})
    status = await client.get_status("wf-1", "r-1")

    assert bodies[0]["stepIndex"] == 2
    assert bodies[0]["approved"] is False
    assert bodies[0]["previousResults"] == {"sync": {"a": 1}}
    assert bodies[1]["action"] == "status"
    assert status["steps"] == []


@pytest.mark.asyncio
async def test_server_error_message_is_surfaced():
    def handler(request):
        return httpx.Response(404, json={"error": "Workflow not found"})

    with pytest.raises(ClientError) as exc_info:
        await _client(handler).start_workflow("nope", "r-1")
    assert exc_info.value.message == "Workflow not found"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_non_json_error_uses_generic_message():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ClientError, match="Failed to execute workflow"):
        await _client(handler).start_workflow("wf-1", "r-1")


@pytest.mark.asyncio
async def test_timeout_raises_dedicated_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ClientTimeoutError) as exc_info:
        await _client(handler).start_workflow("wf-1", "r-1")
    assert "took longer than 5s" in exc_info.value.message
    assert isinstance(exc_info.value, ClientError)


def test_client_from_config():
    client = WorkflowClient.from_config(ClientConfig(base_url="http://api.test/", timeout=3))
    assert client.base_url == "http://api.test"
    assert client.timeout == 3
