"""Notification sinks mirroring activity to an operational channel."""

import logging
from typing import Protocol

import httpx

from .platforms import format_discord_embed

logger = logging.getLogger(__name__)

FACTS_CHANNEL = "facts"
CONVERSATIONS_CHANNEL = "conversations"


class NotificationSink(Protocol):
    """Fire-and-forget notifications. Implementations never raise."""

    async def notify(self, channel: str, text: str) -> None: ...


class NullSink:
    """Sink used when no notification channel is configured."""

    async def notify(self, channel: str, text: str) -> None:
        return None


class WebhookSink:
    """Posts notifications as embeds to Discord-compatible webhooks.

    Each channel tag maps to its own webhook URL. Channels without a URL are
    ignored silently.
    """

    def __init__(
        self,
        webhooks: dict[str, str],
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            webhooks: Mapping of channel tag to webhook URL.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.webhooks = {channel: url for channel, url in webhooks.items() if url}
        self._timeout = timeout
        self._transport = transport

    async def notify(self, channel: str, text: str) -> None:
        url = self.webhooks.get(channel)
        if not url:
            return

        payload = {"embeds": [format_discord_embed(f"Jarvis · {channel}", text)]}

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Notification to %s rejected: HTTP %s", channel, e.response.status_code
            )
        except httpx.HTTPError as e:
            logger.warning("Notification to %s failed: %s", channel, e)
