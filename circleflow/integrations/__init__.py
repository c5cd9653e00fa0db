"""Integration providers used by integration steps."""

from __future__ import annotations

from .n8n import N8nClient, N8nResponse
from .runner import IntegrationError, IntegrationRunner

__all__ = ["IntegrationError", "IntegrationRunner", "N8nClient", "N8nResponse"]
