"""Outbound hub notifications: fire-and-forget.

Contract:
- Sent only after an invoice was created (or found) for the order
- Runs as a detached asyncio task; the webhook response never waits for it
- Any failure (transport, non-2xx) is logged and dropped: no synchronous
  retry, no effect on the response already decided
- Body is signed with the shared hub secret (x-hub-signature), same scheme
  as inbound webhooks
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

import httpx

from sigo_bridge.errors import NotificationError
from sigo_bridge.invoices.transformer import to_major
from sigo_bridge.models import OrderPayload, OutboundNotification, SubmissionResult
from sigo_bridge.webhooks.verification import SIGNATURE_HEADER, canonical_body, sign_body

logger = logging.getLogger(__name__)


def build_notification(result: SubmissionResult, order: OrderPayload) -> OutboundNotification:
    return OutboundNotification(
        invoice_id=result.invoice_id,
        document_number=result.number,
        state=result.state.value if result.state else None,
        pdf_url=result.pdf_url,
        xml_url=result.xml_url,
        order_id=order.order_id,
        amount=to_major(Decimal(order.amount)),
    )


class NotificationDispatcher:
    """Posts OutboundNotifications to the hub in the background."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 5.0,
        http: httpx.AsyncClient | None = None,
    ):
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient()
        # Strong references until each task finishes
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, notification: OutboundNotification) -> asyncio.Task | None:
        """Schedule delivery and return immediately."""
        if not self._url:
            logger.debug("HUB_NOTIFICATION_URL not set: skipping notification for order %s", notification.order_id)
            return None
        task = asyncio.create_task(self._deliver_safely(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver_safely(self, notification: OutboundNotification) -> None:
        try:
            await self.send(notification)
            logger.info("Hub notified for order %s (invoice %s)", notification.order_id, notification.invoice_id)
        except NotificationError as e:
            logger.warning("Hub notification failed for order %s: %s", notification.order_id, e.message)
        except Exception:
            logger.exception("Hub notification crashed for order %s", notification.order_id)

    async def send(self, notification: OutboundNotification) -> None:
        """Deliver one notification. Raises NotificationError on failure."""
        body = canonical_body(notification.to_dict())
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = sign_body(body, self._secret)
        try:
            response = await self._http.post(self._url, content=body, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise NotificationError(f"{type(e).__name__} posting to hub") from e
        if not response.is_success:
            raise NotificationError(f"hub answered HTTP {response.status_code}")

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_http:
            await self._http.aclose()
