"""Discord webhook relay for scrape cycle notifications.

Publishing is fire-and-forget: messages go onto an in-process queue and a
background consumer delivers them. Nothing here ever raises into the
scrape pipeline.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from price_tracker import metrics
from price_tracker.config import settings

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "scraper"

# Discord rejects message content longer than this
MAX_CONTENT_LENGTH = 2000


@dataclass
class TaskNotification:
    channel: str
    message: str


class DiscordWebhook:
    """Discord webhook client."""

    def __init__(self, webhook_url: str, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send_message(self, content: str) -> None:
        """
        Post a plain message.

        Raises:
            httpx.HTTPError: If the webhook rejected the message
        """
        client = await self._get_client()

        if len(content) > MAX_CONTENT_LENGTH:
            content = content[: MAX_CONTENT_LENGTH - 3] + "..."

        payload = {
            "content": content,
            "username": "Price Tracker",
        }
        response = await client.post(self.webhook_url, json=payload)
        response.raise_for_status()


class NotificationRelay:
    """Queue-backed relay from pipeline events to channel webhooks."""

    def __init__(
        self,
        channel_webhooks: Optional[dict[str, str]] = None,
        default_webhook_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            channel_webhooks: Channel name -> webhook URL
            default_webhook_url: Used for channels without their own webhook
            client: Shared httpx client for all webhooks
        """
        self.channel_webhooks = dict(
            settings.discord_channel_webhooks if channel_webhooks is None else channel_webhooks
        )
        self.default_webhook_url = (
            settings.discord_webhook_url if default_webhook_url is None else default_webhook_url
        )
        self._client = client
        self._webhooks: dict[str, DiscordWebhook] = {}
        self._queue: asyncio.Queue[Optional[TaskNotification]] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return bool(self.default_webhook_url or self.channel_webhooks)

    def start(self) -> None:
        """Start the background consumer (idempotent)."""
        if not self.enabled:
            logger.info("Notifications disabled (no Discord webhook configured)")
            return
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="notification-relay")
            logger.info("Notification relay started")

    def publish(self, message: str, channel: str = DEFAULT_CHANNEL) -> None:
        """Queue a message. Never blocks and never raises."""
        if not self.enabled:
            logger.debug(f"Dropping notification for {channel} (disabled)")
            return
        self._queue.put_nowait(TaskNotification(channel=channel, message=message))

    async def drain(self) -> None:
        """Wait until every queued message has been attempted."""
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()

    async def close(self) -> None:
        """Deliver what is queued, then stop the consumer and close clients."""
        if self._consumer is not None and not self._consumer.done():
            await self._queue.put(None)
            try:
                await self._consumer
            except Exception as e:
                logger.error(f"Notification relay stopped with error: {e}")
        self._consumer = None

        for webhook in self._webhooks.values():
            await webhook.close()
        self._webhooks.clear()

    async def _consume(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                if notification is None:
                    return
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: TaskNotification) -> None:
        url = self.channel_webhooks.get(notification.channel) or self.default_webhook_url
        if not url:
            logger.warning(f"No webhook configured for channel {notification.channel}")
            metrics.record_notification(notification.channel, "unroutable")
            return

        webhook = self._webhooks.get(url)
        if webhook is None:
            webhook = DiscordWebhook(url, client=self._client)
            self._webhooks[url] = webhook

        try:
            await webhook.send_message(notification.message)
            metrics.record_notification(notification.channel, "sent")
            logger.debug(f"Sent notification to {notification.channel}")
        except Exception as e:
            # Delivery problems stay here
            metrics.record_notification(notification.channel, "failed")
            logger.error(f"Failed to deliver notification to {notification.channel}: {e}")


def format_cycle_summary(
    run_id: str,
    search_pages: int,
    search_failed: int,
    queued: int,
    persisted: int,
    failed: int,
    products_created: int,
    duration_seconds: float,
) -> str:
    """Human-readable one-message summary of a cycle."""
    return (
        f"**Price scrape finished** `{run_id[:8]}` at {datetime.utcnow():%Y-%m-%d %H:%M} UTC\n"
        f"Search pages: {search_pages - search_failed}/{search_pages} ok\n"
        f"Products queued: {queued}\n"
        f"Prices recorded: {persisted} (new products: {products_created})\n"
        f"Failed items: {failed}\n"
        f"Duration: {duration_seconds:.0f}s"
    )
