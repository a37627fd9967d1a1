"""Failure alerting over an incoming webhook.

Alerts are posted as Teams-style message cards through an azure-core pipeline.
The HTTP call is synchronous and runs in the default executor.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from datetime import UTC, datetime
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest

logger = logging.getLogger(__name__)

SERVICE_NAME = "Extension Attribute Synchronizer"
USER_AGENT = "extattr/1.0"
ALERT_THEME_COLOR = "FF0000"


class Notifier(Protocol):
    async def notify(self, title: str, message: str, facts: dict[str, Any]) -> None:
        """Send an alert. Raises on delivery failure."""
        ...


def build_message_card(title: str, message: str, facts: dict[str, Any]) -> dict[str, Any]:
    """Teams MessageCard payload."""
    now = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
    card_facts = [
        {"name": "Service", "value": SERVICE_NAME},
        {"name": "Timestamp", "value": now},
        {"name": "Server", "value": socket.gethostname()},
    ]
    card_facts.extend({"name": str(k), "value": str(v)} for k, v in facts.items())

    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": title,
        "title": title,
        "themeColor": ALERT_THEME_COLOR,
        "text": message,
        "sections": [
            {
                "activityTitle": SERVICE_NAME,
                "activitySubtitle": now,
                "text": message,
                "facts": card_facts,
            }
        ],
    }


class WebhookNotifier:
    """Posts alert cards to an incoming webhook URL."""

    def __init__(self, webhook_url: str, client: PipelineClient | None = None) -> None:
        self._webhook_url = webhook_url
        self._client = client or PipelineClient(
            base_url=webhook_url,
            policies=[
                HeadersPolicy({"Content-Type": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(retry_total=3),
            ],
        )

    async def notify(self, title: str, message: str, facts: dict[str, Any]) -> None:
        request = HttpRequest("POST", self._webhook_url, json=build_message_card(title, message, facts))

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, self._client.send_request, request)
        response.raise_for_status()

        logger.info("Alert notification sent", extra={"title": title})
