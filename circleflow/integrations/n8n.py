"""Client for triggering n8n workflows through their webhook URLs."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel

from ..config import N8nConfig

logger = logging.getLogger(__name__)


class N8nResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None


def parse_body(text: str) -> Any:
    """Return ``text`` decoded as JSON, or the raw text (``None`` when empty)."""
    try:
        return json.loads(text)
    except ValueError:
        return text or None


class N8nClient:
    """Trigger n8n workflows via ``<base_url>/webhook/<slug>``."""

    def __init__(
        self,
        config: Optional[N8nConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config or N8nConfig()
        self._http = http_client

    @property
    def base_url(self) -> str:
        return self._config.base_url.rstrip("/")

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    async def trigger(
        self,
        webhook_slug: str,
        method: Literal["GET", "POST"] = "POST",
        data: Any = None,
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> N8nResponse:
        """Trigger the workflow listening on ``webhook_slug``.

        Failures, including timeouts, are reported in the returned
        :class:`N8nResponse` rather than raised.
        """
        url = f"{self.base_url}/webhook/{webhook_slug}"
        timeout = timeout or self._config.timeout
        kwargs: dict[str, Any] = {
            "headers": {"Content-Type": "application/json", **(headers or {})},
            "timeout": timeout,
        }
        if data is not None:
            if method == "GET":
                kwargs["params"] = data
            else:
                kwargs["content"] = json.dumps(data, default=str)

        try:
            response = await self._send(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"n8n workflow {webhook_slug} timed out after {timeout}s")
            return N8nResponse(success=False, error=f"Request timed out after {timeout:g}s")
        except httpx.HTTPError as exc:
            logger.error(f"Error triggering n8n workflow {webhook_slug}: {exc}")
            return N8nResponse(success=False, error=str(exc) or type(exc).__name__)

        if response.is_error:
            logger.error(
                f"Failed to trigger n8n workflow {webhook_slug}: "
                f"{response.status_code} {response.reason_phrase}"
            )
            return N8nResponse(
                success=False,
                error=f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        return N8nResponse(
            success=True,
            data=parse_body(response.text),
            status_code=response.status_code,
        )

    async def check_health(self) -> bool:
        """Return ``True`` when the n8n instance answers its health probe."""
        try:
            response = await self._send("GET", f"{self.base_url}/healthz", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.is_success
