import logging
from datetime import datetime
from typing import Optional

import httpx

logger = logging.getLogger("orders-service.notifications")


class Notifier:
    """Tells the outside world about order events.

    Events are always logged. When a webhook URL is configured they are also
    posted to it; delivery problems are logged and never fail the caller.
    """

    def __init__(self, webhook_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self.transport = transport

    async def notify(self, event: str, order: dict):
        order_id = str(order.get("_id"))
        logger.info(
            f"Order event {event}",
            extra={"event": event, "order_id": order_id, "order_code": order.get("order_code"),
                   "user_id": order.get("user_id"), "status": order.get("status")}
        )
        if not self.webhook_url:
            return

        payload = {
            "event": event,
            "order_id": order_id,
            "order_code": order.get("order_code"),
            "user_id": order.get("user_id"),
            "status": order.get("status"),
            "payment_status": order.get("payment_status"),
            "sent_at": datetime.utcnow().isoformat(),
        }
        async with httpx.AsyncClient(transport=self.transport) as client:
            try:
                response = await client.post(self.webhook_url, json=payload, timeout=5.0)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(
                    f"Failed to deliver {event} notification: {e}",
                    extra={"event": event, "order_id": order_id}
                )
