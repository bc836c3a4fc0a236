# src/services/notifier.py

"""Bounded outbound queue from the price monitor to delivery channels."""

import asyncio
import logging
import smtplib
import ssl
from collections.abc import Callable
from email.message import EmailMessage
from typing import Protocol

from curl_cffi import requests as curl_requests

from src.config.settings import Settings
from src.models.watch import NotificationEvent
from src.storage.catalog_store import CatalogStore

logger = logging.getLogger("price_watch.notifier")


class Channel(Protocol):
    """One delivery transport (email, push, in-app)."""

    name: str

    def deliver(self, event: NotificationEvent) -> None:
        """Send *event*; raise on failure."""
        ...


def _default_recipient(owner_id: str) -> str | None:
    return owner_id if "@" in owner_id else None


class EmailChannel:
    """SMTP delivery; logs the message when no server is configured."""

    name = "email"

    def __init__(
        self,
        recipient_for: Callable[[str], str | None] = _default_recipient,
    ) -> None:
        self.settings = Settings()
        self._recipient_for = recipient_for

    def _build(self, event: NotificationEvent, to: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = event.title
        msg["From"] = self.settings.SMTP_SENDER
        msg["To"] = to
        lines = [event.message]
        if event.savings is not None:
            lines.append(
                f"You save ${event.savings} ({event.percentage_drop}%)."
            )
        msg.set_content("\n".join(lines))
        return msg

    def deliver(self, event: NotificationEvent) -> None:
        to = self._recipient_for(event.owner_id)
        if not self.settings.SMTP_HOST or not to:
            logger.info(
                "[email] To %s: %s | %s",
                event.owner_id,
                event.title,
                event.message,
            )
            return
        msg = self._build(event, to)
        with smtplib.SMTP(
            self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=20,
        ) as s:
            s.starttls(context=ssl.create_default_context())
            if self.settings.SMTP_USER:
                s.login(self.settings.SMTP_USER, self.settings.SMTP_PASSWORD)
            s.send_message(msg)
        logger.info("[email] Sent '%s' to %s", event.title, to)


class PushChannel:
    """Webhook POST; logs the payload when no webhook is configured."""

    name = "push"

    def __init__(self, webhook_url: str | None = None) -> None:
        self.settings = Settings()
        self.webhook_url = (
            webhook_url
            if webhook_url is not None
            else self.settings.PUSH_WEBHOOK_URL
        )

    def deliver(self, event: NotificationEvent) -> None:
        if not self.webhook_url:
            logger.info(
                "[push] To %s: %s", event.owner_id, event.title,
            )
            return
        resp = curl_requests.post(
            self.webhook_url,
            json=event.to_dict(),
            timeout=self.settings.REQUEST_TIMEOUT,
        )
        if resp.status_code >= 400:
            raise RuntimeError(f"push webhook returned HTTP {resp.status_code}")


class InAppChannel:
    """Stores the event in the owner's inbox."""

    name = "in_app"

    def __init__(self, catalog: CatalogStore) -> None:
        self.catalog = catalog

    def deliver(self, event: NotificationEvent) -> None:
        self.catalog.add_notification(event)


class NotificationDispatcher:
    """Delivers trigger events asynchronously, per enabled channel.

    The monitor commits the trigger first and then calls
    :meth:`enqueue`, which never blocks.  A consumer task drains the
    queue; delivery failures are logged per channel and never reach
    the trigger state.
    """

    def __init__(
        self,
        channels: list[Channel],
        maxsize: int | None = None,
    ) -> None:
        self.channels: dict[str, Channel] = {c.name: c for c in channels}
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(
            maxsize=maxsize or Settings.NOTIFICATION_QUEUE_SIZE
        )
        self._consumer: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, event: NotificationEvent) -> bool:
        """Queue *event* for delivery; False if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "Notification queue full, dropped event %s for watch %s",
                event.id,
                event.watch_id,
            )
            return False
        return True

    async def _deliver(self, event: NotificationEvent) -> None:
        for name in event.channels.enabled():
            channel = self.channels.get(name)
            if channel is None:
                logger.debug("No '%s' channel configured", name)
                continue
            try:
                await asyncio.to_thread(channel.deliver, event)
                self.delivered += 1
            except Exception as exc:
                self.failed += 1
                logger.error(
                    "[%s] Delivery failed for watch %s: %s",
                    name,
                    event.watch_id,
                    exc,
                    exc_info=True,
                )

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Spawn the consumer task on the running loop."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(
                self._consume(), name="notification-consumer"
            )

    async def drain(self) -> None:
        """Deliver everything currently queued."""
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        """Flush pending events, then cancel the consumer."""
        await self.drain()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
