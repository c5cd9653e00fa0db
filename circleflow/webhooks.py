"""Inbound n8n callback handling."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from .contracts import CamelModel
from .persistence import CircleRepository, ExecutionLogEntry
from .persistence.models import utcnow

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class WebhookPayload(CamelModel):
    event: str = ""
    request_id: Optional[str] = None
    workflow_slug: Optional[str] = None
    data: Any = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "WebhookPayload":
        """Build a payload from loosely typed callback fields."""
        return cls(
            event=_text(raw.get("event")) or "",
            request_id=_text(raw.get("requestId", raw.get("request_id"))),
            workflow_slug=_text(raw.get("workflowSlug", raw.get("workflow_slug"))),
            data=raw.get("data"),
        )


class WebhookAck(CamelModel):
    received: bool = True
    event: str
    timestamp: str


class WebhookUnauthorized(Exception):
    """The callback carried a secret that does not match the configured one."""


class WebhookHandler:
    """Apply n8n callback events to request metadata and the execution log."""

    def __init__(self, repository: CircleRepository, secret: Optional[str] = None) -> None:
        self._repository = repository
        self._secret = secret

    def verify(self, raw: Dict[str, Any]) -> None:
        if not self._secret:
            return
        supplied = (_text(raw.get("secret")) or "").encode()
        if not hmac.compare_digest(supplied, self._secret.encode()):
            logger.warning("Invalid n8n webhook secret")
            raise WebhookUnauthorized("Unauthorized")

    async def handle(self, raw: Dict[str, Any]) -> WebhookAck:
        """Process one callback.

        Raises :class:`WebhookUnauthorized` on a secret mismatch; every other
        failure is logged and the callback is still acknowledged.
        """
        self.verify(raw)
        payload = WebhookPayload.from_raw(raw)

        logger.info(
            f"n8n webhook received: event={payload.event} request={payload.request_id} "
            f"workflow={payload.workflow_slug}"
        )
        try:
            await self._dispatch(payload)
        except Exception as exc:
            logger.error(f"Error processing n8n webhook {payload.event}: {exc}")

        return WebhookAck(event=payload.event, timestamp=utcnow().isoformat())

    async def _dispatch(self, payload: WebhookPayload) -> None:
        if payload.event == "workflow_complete":
            await self._merge(
                payload,
                {
                    "n8n_completed": True,
                    "n8n_workflow": payload.workflow_slug,
                    "n8n_result": payload.data,
                    "n8n_completed_at": utcnow().isoformat(),
                },
            )
        elif payload.event == "step_complete":
            if not payload.request_id:
                logger.warning("step_complete webhook without requestId ignored")
                return
            entry = ExecutionLogEntry(
                request_id=payload.request_id,
                action="n8n_step_complete",
                results=payload.data,
            )
            try:
                await self._repository.append_execution_log(entry)
            except Exception as exc:
                logger.error(f"Failed to log n8n step completion for {payload.request_id}: {exc}")
        elif payload.event == "error":
            logger.error(
                f"n8n workflow error: workflow={payload.workflow_slug} "
                f"request={payload.request_id} data={payload.data}"
            )
            await self._merge(
                payload,
                {
                    "n8n_error": True,
                    "n8n_workflow": payload.workflow_slug,
                    "n8n_error_data": payload.data,
                    "n8n_error_at": utcnow().isoformat(),
                },
            )
        elif payload.event == "custom":
            logger.info(f"Custom n8n event: {payload.data}")
        else:
            logger.info(f"Unknown n8n event type: {payload.event}")

    async def _merge(self, payload: WebhookPayload, patch: Dict[str, Any]) -> None:
        if not payload.request_id:
            logger.warning(f"{payload.event} webhook without requestId ignored")
            return
        merged = await self._repository.merge_request_metadata(payload.request_id, patch)
        if merged is None:
            logger.warning(f"n8n webhook for unknown request {payload.request_id}")


__all__ = ["WebhookAck", "WebhookHandler", "WebhookPayload", "WebhookUnauthorized"]
