"""Dispatch of integration steps to their providers."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..conditions import build_scope, resolve_path
from ..contracts import ExecutionContext, IntegrationStep
from .n8n import N8nClient, parse_body

logger = logging.getLogger(__name__)

InternalAction = Callable[[ExecutionContext, Dict[str, Any]], Awaitable[Any]]


class IntegrationError(Exception):
    """An integration call failed; the message is shown to users."""


def _config_payload(config: dict[str, Any]) -> dict[str, Any]:
    raw = config.get("payload")
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class IntegrationRunner:
    """Runs one integration step synchronously; never retries."""

    def __init__(
        self,
        n8n: Optional[N8nClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._n8n = n8n or N8nClient(http_client=http_client)
        self._http = http_client
        self._timeout = timeout
        self._actions: Dict[str, InternalAction] = {}
        self._providers: Dict[str, Callable[..., Awaitable[Any]]] = {
            "n8n": self._run_n8n,
            "webhook": self._run_webhook,
            "teams": self._run_teams,
            "slack": self._run_slack,
            "outlook": self._run_outlook,
            "internal": self._run_internal,
        }

    def register_action(self, name: str, action: InternalAction) -> None:
        """Register an in-process action for the ``internal`` provider."""
        self._actions[name] = action

    def build_input(self, step: IntegrationStep, context: ExecutionContext) -> dict[str, Any]:
        """Map context values into the call payload per ``input_mapping``."""
        scope = build_scope(context)
        return {key: resolve_path(scope, path) for key, path in step.input_mapping.items()}

    async def run(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        provider = step.target.provider
        handler = self._providers.get(provider)
        if handler is None:
            raise IntegrationError(f"Unknown integration provider: {provider}")
        return await handler(step, context)

    # ------------------------------------------------------------------
    async def _post(self, url: str, payload: Any) -> httpx.Response:
        kwargs = {"json": payload, "timeout": self._timeout}
        try:
            if self._http is not None:
                return await self._http.post(url, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.post(url, **kwargs)
        except httpx.TimeoutException as exc:
            raise IntegrationError(f"Request to {url} timed out after {self._timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise IntegrationError(str(exc) or type(exc).__name__) from exc

    async def _run_n8n(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        config = step.target.config
        slug = config.get("workflowId") or config.get("workflow_id") or config.get("slug")
        if not slug:
            raise IntegrationError("n8n workflow ID/webhook slug is required")

        payload = {
            **_config_payload(config),
            **self.build_input(step, context),
            "_context": {
                "requestId": context.request_id,
                "userId": context.user_id,
                "organizationId": context.organization_id,
                "stepIndex": context.current_step_index,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "requestData": context.request_data,
            "previousResults": context.previous_results,
        }
        response = await self._n8n.trigger(slug, "POST", payload)
        if not response.success:
            raise IntegrationError(response.error or "n8n workflow failed")
        return response.data

    async def _run_webhook(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        url = step.target.config.get("target")
        if not url:
            raise IntegrationError("Webhook URL is required")
        payload = {
            **_config_payload(step.target.config),
            **self.build_input(step, context),
            "requestId": context.request_id,
            "requestData": context.request_data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = await self._post(url, payload)
        if response.is_error:
            raise IntegrationError(f"Webhook failed with status {response.status_code}")
        return parse_body(response.text)

    def _message(self, step: IntegrationStep, context: ExecutionContext) -> str:
        payload = step.target.config.get("payload")
        if isinstance(payload, str) and payload:
            return payload
        return f"New request #{context.request_id} requires attention"

    async def _run_teams(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        url = step.target.config.get("target")
        if not url:
            raise IntegrationError("Teams webhook URL is required")
        card = {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": "0076D7",
            "summary": f"Request #{context.request_id}",
            "sections": [
                {
                    "activityTitle": "Request Update",
                    "facts": [
                        {"name": "Request ID", "value": context.request_id},
                        {"name": "Status", "value": "Workflow Step Triggered"},
                    ],
                    "text": self._message(step, context),
                    "markdown": True,
                }
            ],
        }
        response = await self._post(url, card)
        if response.is_error:
            raise IntegrationError(f"Teams webhook failed with status {response.status_code}")
        return {"sent": True}

    async def _run_slack(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        url = step.target.config.get("target")
        if not url:
            raise IntegrationError("Slack webhook URL is required")
        message = self._message(step, context)
        body = {
            "text": message,
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*Request Update*\nRequest ID: `{context.request_id}`\n{message}",
                    },
                }
            ],
        }
        response = await self._post(url, body)
        if response.is_error:
            raise IntegrationError(f"Slack webhook failed with status {response.status_code}")
        return {"sent": True}

    async def _run_outlook(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        # TODO: send through Microsoft Graph once app credentials are configurable
        logger.info(
            f"Outlook integration queued: action={step.target.action} "
            f"target={step.target.config.get('target')} request={context.request_id}"
        )
        return {
            "queued": True,
            "message": "Outlook action queued. Configure Microsoft Graph API for full functionality.",
            "action": step.target.action,
            "target": step.target.config.get("target"),
        }

    async def _run_internal(self, step: IntegrationStep, context: ExecutionContext) -> Any:
        action = self._actions.get(step.target.action)
        if action is None:
            raise IntegrationError(f"Unknown internal action: {step.target.action}")
        return await action(context, self.build_input(step, context))
