import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from shared.utils import AppException
from orders_service.models import OrderStatus, PaymentMethod
from orders_service.lifecycle import SYSTEM_ACTOR

logger = logging.getLogger("orders-service.sweeper")


class ExpirySweeper:
    """Cancels wallet orders left unpaid past the deadline.

    Cash-on-delivery orders are never swept. Each order goes through the
    regular cancellation path, so stock comes back exactly like a
    user-initiated cancel, and one failing order does not stop the run.
    """

    def __init__(self, store, lifecycle, expiry_minutes: int = 100, interval_seconds: int = 3600):
        self.store = store
        self.lifecycle = lifecycle
        self.expiry = timedelta(minutes=expiry_minutes)
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        cutoff = (now or datetime.utcnow()) - self.expiry
        orders = await self.store.find_expired_unpaid(PaymentMethod.MOMO.value, cutoff)
        if not orders:
            logger.info("No unpaid orders to cancel")
            return {"total": 0, "cancelled": 0, "failed": 0}

        cancelled = 0
        failed = 0
        for order in orders:
            extra = {"order_id": str(order["_id"]), "order_code": order["order_code"]}
            try:
                await self.lifecycle.transition(order["_id"], SYSTEM_ACTOR, OrderStatus.CANCELLED)
                cancelled += 1
                logger.info("Auto-cancelled unpaid order", extra=extra)
            except AppException as e:
                # Typically a concurrent payment or cancel got there first
                failed += 1
                logger.warning(f"Failed to auto-cancel order: {e.detail}", extra=extra)
            except Exception:
                failed += 1
                logger.exception("Failed to auto-cancel order", extra=extra)

        summary = {"total": len(orders), "cancelled": cancelled, "failed": failed}
        logger.info(f"Sweep finished: {cancelled} cancelled, {failed} failed", extra={"event": "sweep"})
        return summary

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unpaid order sweep failed")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Unpaid order sweeper scheduled every {self.interval_seconds}s")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
