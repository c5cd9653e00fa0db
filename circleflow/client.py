"""HTTP client for the workflow execution API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import ClientConfig
from .constants import DEFAULT_CLIENT_TIMEOUT
from .contracts import StepExecutionResult
from .errors import ClientError, ClientTimeoutError

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/api/workflows/execute"


class WorkflowClient:
    """Call ``/api/workflows/execute`` on a running circleflow API.

    ``http_client`` may be supplied to share a connection pool or to plug in a
    test transport; otherwise a client is opened per call.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = DEFAULT_CLIENT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http_client

    @classmethod
    def from_config(
        cls, config: ClientConfig, http_client: Optional[httpx.AsyncClient] = None
    ) -> "WorkflowClient":
        return cls(config.base_url, config.timeout, http_client)

    async def start_workflow(
        self,
        workflow_id: str,
        request_id: str,
        request_data: Optional[Dict[str, Any]] = None,
    ) -> List[StepExecutionResult]:
        body = await self._execute(
            {
                "action": "start",
                "workflowId": workflow_id,
                "requestId": request_id,
                "requestData": request_data or {},
            }
        )
        return self._results(body)

    async def continue_workflow(
        self,
        workflow_id: str,
        request_id: str,
        step_index: int,
        approved: bool,
        request_data: Optional[Dict[str, Any]] = None,
        previous_results: Optional[Dict[str, Any]] = None,
    ) -> List[StepExecutionResult]:
        body = await self._execute(
            {
                "action": "continue",
                "workflowId": workflow_id,
                "requestId": request_id,
                "stepIndex": step_index,
                "approved": approved,
                "requestData": request_data or {},
                "previousResults": previous_results or {},
            }
        )
        return self._results(body)

    async def get_status(self, workflow_id: str, request_id: str) -> Dict[str, Any]:
        return await self._execute(
            {"action": "status", "workflowId": workflow_id, "requestId": request_id}
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _results(body: Dict[str, Any]) -> List[StepExecutionResult]:
        return [StepExecutionResult.model_validate(r) for r in body.get("results") or []]

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload)

    async def _execute(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{EXECUTE_PATH}"
        try:
            response = await self._post(url, payload)
        except httpx.TimeoutException as exc:
            logger.error(f"Workflow API call timed out after {self.timeout:g}s")
            raise ClientTimeoutError(self.timeout) from exc
        except httpx.HTTPError as exc:
            raise ClientError(str(exc) or type(exc).__name__) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            message = body.get("error") if isinstance(body, dict) else None
            raise ClientError(
                message or "Failed to execute workflow",
                status_code=response.status_code,
                details=body.get("details") if isinstance(body, dict) else None,
            )
        return body if isinstance(body, dict) else {}


__all__ = ["WorkflowClient"]
