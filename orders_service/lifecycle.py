"""
Order lifecycle: checkout with stock reservation, the status state machine,
cancellation with stock release, and payment results.

    pending -> confirmed -> shipping -> delivered
       |           |
       +-----------+--> cancelled

Stock is reserved when the order is created and given back exactly once when
it is cancelled. There are no multi-document transactions: every step is a
conditional update and a failed checkout compensates the reservations it
already made.
"""
import logging
import random
import time
from typing import Optional, List

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    ADMIN_ROLES, AppException, ValidationException, NotFoundException, ForbiddenException, ConflictException,
    InvalidTransitionException, PartialFailureException,
    GatewayUnavailableException, GatewayRejectedException
)
from orders_service.models import OrderStatus, PaymentStatus, PaymentMethod, PaymentResult
from orders_service.store import OrderStore, build_order
from orders_service.inventory import InventoryLedger
from orders_service.carts import CartStore
from orders_service.notifications import Notifier

logger = logging.getLogger("orders-service.lifecycle")

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPING, OrderStatus.CANCELLED},
    OrderStatus.SHIPPING: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.UNPAID: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


class Actor(BaseModel):
    id: str
    role: str = "user"

    @property
    def is_privileged(self) -> bool:
        return self.role in ADMIN_ROLES or self.role == "system"


SYSTEM_ACTOR = Actor(id="system", role="system")


def generate_order_code() -> str:
    """ORD + last 8 digits of the millisecond clock + 4 random digits."""
    timestamp = str(int(time.time() * 1000))[-8:]
    return f"ORD{timestamp}{random.randint(0, 9999):04d}"


class OrderLifecycleManager:
    def __init__(
        self,
        store: OrderStore,
        inventory: InventoryLedger,
        carts: CartStore,
        gateway=None,
        notifier: Optional[Notifier] = None,
        code_max_attempts: int = 5,
    ):
        self.store = store
        self.inventory = inventory
        self.carts = carts
        self.gateway = gateway
        self.notifier = notifier or Notifier()
        self.code_max_attempts = code_max_attempts

    # --- Checkout ---

    async def create_order(
        self,
        user_id: str,
        shipping_address: dict,
        payment_method: str,
        source: str = "cart",
        items: Optional[List[dict]] = None,
        cart_item_ids: Optional[List[str]] = None,
        note: str = "",
        idempotency_key: Optional[str] = None,
    ) -> dict:
        scoped_key = f"{user_id}:{idempotency_key}" if idempotency_key else None
        if scoped_key:
            existing = await self.store.find_by_idempotency_key(scoped_key)
            if existing:
                logger.info("Replayed order creation", extra={"order_id": str(existing["_id"]), "user_id": user_id})
                return existing

        requested = await self._resolve_items(user_id, source, items, cart_item_ids)

        # Snapshot name/price/image now; the order never re-reads them
        lines = []
        for product_id, quantity in requested.items():
            product = await self.inventory.get_product(product_id)
            if not product.get("is_active", True):
                raise ValidationException(f"Product {product.get('name', product_id)} is not available")
            lines.append({
                "product_id": product_id,
                "name": product["name"],
                "price": float(product["price"]),
                "quantity": quantity,
                "image": product.get("image_url") or "",
            })

        # Validate the whole document before touching stock
        draft = build_order({
            "order_code": generate_order_code(),
            "user_id": user_id,
            "items": lines,
            "shipping_address": shipping_address,
            "payment_method": payment_method,
            "total": sum(line["price"] * line["quantity"] for line in lines),
            "note": note or "",
            "idempotency_key": scoped_key,
        })

        reserved = []
        try:
            for line in lines:
                await self.inventory.adjust_stock(line["product_id"], -line["quantity"])
                reserved.append(line)
            order, created = await self._insert(draft)
        except Exception:
            await self._release_reservation(reserved, draft.order_code)
            raise

        if not created:
            # Lost an idempotent race: the other request owns the reservation
            await self._release_reservation(reserved, draft.order_code)
            return order

        logger.info(
            "Order created",
            extra={"order_id": str(order["_id"]), "order_code": order["order_code"], "user_id": user_id}
        )

        if source == "cart":
            await self.carts.remove_items(user_id, [line["product_id"] for line in lines])

        if order["payment_method"] == PaymentMethod.MOMO.value and self.gateway is not None:
            try:
                payment_url = await self.gateway.create_payment_request(order, attempt=0)
                order = await self.store.set_payment_link(order["_id"], payment_url, 1)
            except (GatewayUnavailableException, GatewayRejectedException) as e:
                logger.warning(
                    f"Order created without payment URL: {e.detail}",
                    extra={"order_id": str(order["_id"]), "order_code": order["order_code"]}
                )

        await self.notifier.notify("order_created", order)
        return order

    async def _resolve_items(self, user_id: str, source: str, items, cart_item_ids) -> dict:
        if source == "buy_now":
            if not items:
                raise ValidationException("No items provided")
            raw = [(item["product_id"], item["quantity"]) for item in items]
        elif source == "cart":
            cart_items = await self.carts.get_items(user_id, cart_item_ids)
            if not cart_items:
                raise ValidationException("No cart items selected for checkout")
            raw = [(item["product_id"], item["quantity"]) for item in cart_items]
        else:
            raise ValidationException(f"Unknown order source: {source}")

        merged = {}
        for product_id, quantity in raw:
            if not isinstance(quantity, int) or quantity < 1:
                raise ValidationException(f"Quantity for product {product_id} must be at least 1")
            merged[product_id] = merged.get(product_id, 0) + quantity
        return merged

    async def _insert(self, draft):
        for _ in range(self.code_max_attempts):
            try:
                return await self.store.insert(draft), True
            except DuplicateKeyError:
                if draft.idempotency_key:
                    existing = await self.store.find_by_idempotency_key(draft.idempotency_key)
                    if existing:
                        return existing, False
                logger.warning("Order code collision, regenerating", extra={"order_code": draft.order_code})
                draft.order_code = generate_order_code()
        raise ConflictException("Could not allocate a unique order code, please retry")

    async def _release_reservation(self, lines: List[dict], order_code: str):
        for line in reversed(lines):
            try:
                await self.inventory.adjust_stock(line["product_id"], line["quantity"])
            except Exception:
                logger.error(
                    "Failed to roll back stock reservation",
                    exc_info=True,
                    extra={"order_code": order_code, "product_id": line["product_id"]}
                )
        if lines:
            logger.info("Rolled back stock reservation", extra={"order_code": order_code})

    # --- Reads ---

    async def get_order(self, order_id, actor: Actor) -> dict:
        order = await self.store.find_by_id(order_id)
        if not actor.is_privileged and order["user_id"] != actor.id:
            # Same answer as a missing order
            raise NotFoundException("Order not found")
        return order

    # --- State machine ---

    async def transition(self, order_id, actor: Actor, new_status) -> dict:
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            raise ValidationException(f"Unknown order status: {new_status}")

        order = await self.store.find_by_id(order_id)
        current = OrderStatus(order["status"])
        self._authorize(order, actor, new_status)
        self._check_transition(order, current, new_status)

        if new_status == OrderStatus.CANCELLED:
            updated = await self._cancel(order, current)
            event = "order_cancelled"
        else:
            if order.get("released_items"):
                raise InvalidTransitionException(
                    f"Order {order['order_code']} has stock already released and can only be cancelled",
                    current=current.value, requested=new_status.value
                )
            # Refused as well if a cancellation starts releasing stock meanwhile
            updated = await self.store.conditional_update_status(
                order["_id"], current.value, new_status.value,
                extra_filter={"released_items": {"$size": 0}}
            )
            event = "order_status_changed"

        logger.info(
            f"Order moved from {current.value} to {new_status.value}",
            extra={"order_id": str(order["_id"]), "order_code": order["order_code"],
                   "user_id": actor.id, "status": new_status.value}
        )
        await self.notifier.notify(event, updated)
        return updated

    def _authorize(self, order: dict, actor: Actor, new_status: OrderStatus):
        if actor.is_privileged:
            return
        if order["user_id"] != actor.id:
            raise NotFoundException("Order not found")
        if new_status != OrderStatus.CANCELLED:
            raise ForbiddenException("Customers can only cancel their own orders")

    @staticmethod
    def _check_transition(order: dict, current: OrderStatus, new_status: OrderStatus):
        if new_status in TRANSITIONS[current]:
            return
        code = order["order_code"]
        if not TRANSITIONS[current]:
            detail = f"Order {code} is already {current.value} and can no longer change"
        elif new_status == OrderStatus.CANCELLED:
            detail = f"Order {code} cannot be cancelled because it is already {current.value}"
        else:
            detail = f"Cannot change order {code} from {current.value} to {new_status.value}"
        raise InvalidTransitionException(detail, current=current.value, requested=new_status.value)

    async def _cancel(self, order: dict, current: OrderStatus) -> dict:
        released = await self._release_stock(order, current)

        payment_status = order["payment_status"]
        if payment_status == PaymentStatus.PAID.value:
            payment_status = PaymentStatus.REFUNDED.value
        # A payment landing between load and write must not be overwritten,
        # and every item must have been released
        try:
            return await self.store.conditional_update_status(
                order["_id"], current.value, OrderStatus.CANCELLED.value,
                extra_fields={"payment_status": payment_status},
                extra_filter={
                    "payment_status": order["payment_status"],
                    "released_items": {"$size": len(order["items"])},
                }
            )
        except ConflictException:
            latest = await self.store.find_by_id(order["_id"])
            if latest["status"] != OrderStatus.CANCELLED.value:
                await self._reserve_again(order, released)
            raise

    async def _release_stock(self, order: dict, current: OrderStatus) -> List[int]:
        """Give back stock of every unreleased item; returns the indexes released here."""
        # Claim each item on the order before giving its stock back, so a
        # retried or concurrent cancellation never releases it twice
        failed = []
        released = []
        already_released = set(order.get("released_items", []))
        for index, item in enumerate(order["items"]):
            if index in already_released:
                continue
            if not await self.store.claim_item_release(order["_id"], index, current.value):
                continue
            try:
                await self.inventory.adjust_stock(item["product_id"], item["quantity"])
                released.append(index)
            except AppException as e:
                await self.store.unclaim_item_release(order["_id"], index)
                failed.append({"product_id": item["product_id"], "quantity": item["quantity"], "error": e.detail})
            except Exception:
                await self.store.unclaim_item_release(order["_id"], index)
                raise

        if failed:
            logger.error(
                "Stock release incomplete, order left uncancelled",
                extra={"order_id": str(order["_id"]), "order_code": order["order_code"], "event": "partial_failure"}
            )
            raise PartialFailureException(
                f"Stock for {len(failed)} item(s) of order {order['order_code']} could not be released; "
                "the order was not cancelled",
                failed
            )
        return released

    async def _reserve_again(self, order: dict, indexes: List[int]):
        # The order stayed live: take back what this cancellation released.
        # An item that cannot be reserved again stays claimed, which leaves
        # the order cancellable only.
        for index in reversed(indexes):
            item = order["items"][index]
            try:
                await self.inventory.adjust_stock(item["product_id"], -item["quantity"])
            except AppException as e:
                logger.error(
                    f"Could not reserve stock again after a lost cancellation: {e.detail}",
                    extra={"order_id": str(order["_id"]), "order_code": order["order_code"],
                           "product_id": item["product_id"], "event": "partial_failure"}
                )
                continue
            await self.store.unclaim_item_release(order["_id"], index)
        logger.warning(
            "Cancellation lost to a concurrent update, stock reserved again",
            extra={"order_id": str(order["_id"]), "order_code": order["order_code"]}
        )

    # --- Payment ---

    async def apply_payment_result(self, order_id, result, transaction_id: Optional[str] = None) -> dict:
        """Record the outcome of a verified gateway payment. Safe to repeat."""
        result = PaymentResult(result)
        if result == PaymentResult.FAILURE:
            order = await self.store.find_by_id(order_id)
            logger.info(
                "Gateway payment failed, order stays unpaid",
                extra={"order_id": str(order["_id"]), "order_code": order["order_code"]}
            )
            return order

        extra = {"payment_transaction_id": transaction_id} if transaction_id else {}
        updated = await self.store.conditional_update_payment_status(
            order_id, PaymentStatus.UNPAID.value, PaymentStatus.PAID.value, extra,
            extra_filter={"status": {"$ne": OrderStatus.CANCELLED.value}}
        )
        if updated is not None:
            logger.info("Order paid", extra={"order_id": str(updated["_id"]), "order_code": updated["order_code"]})
            await self.notifier.notify("order_paid", updated)
            return updated

        order = await self.store.find_by_id(order_id)
        if order["payment_status"] == PaymentStatus.PAID.value:
            logger.info("Payment already applied", extra={"order_id": str(order["_id"])})
            return order

        if order["status"] == OrderStatus.CANCELLED.value and order["payment_status"] == PaymentStatus.UNPAID.value:
            refunded = await self.store.conditional_update_payment_status(
                order_id, PaymentStatus.UNPAID.value, PaymentStatus.REFUNDED.value, extra,
                extra_filter={"status": OrderStatus.CANCELLED.value}
            )
            logger.warning(
                "Payment received for a cancelled order, marked for refund",
                extra={"order_id": str(order["_id"]), "order_code": order["order_code"]}
            )
            return refunded or await self.store.find_by_id(order_id)

        return order

    async def set_payment_status(self, order_id, actor: Actor, new_payment_status) -> dict:
        if not actor.is_privileged:
            raise ForbiddenException("Only admins can change payment status")
        try:
            new_payment_status = PaymentStatus(new_payment_status)
        except ValueError:
            raise ValidationException(f"Unknown payment status: {new_payment_status}")

        order = await self.store.find_by_id(order_id)
        current = PaymentStatus(order["payment_status"])
        if new_payment_status not in PAYMENT_TRANSITIONS[current]:
            raise InvalidTransitionException(
                f"Cannot change payment of order {order['order_code']} from {current.value} to {new_payment_status.value}",
                current=current.value, requested=new_payment_status.value
            )

        updated = await self.store.conditional_update_payment_status(
            order["_id"], current.value, new_payment_status.value
        )
        if updated is None:
            raise ConflictException()
        if new_payment_status == PaymentStatus.PAID:
            await self.notifier.notify("order_paid", updated)
        return updated

    async def request_payment_url(self, order_id, actor: Actor) -> dict:
        order = await self.get_order(order_id, actor)
        if order["payment_method"] != PaymentMethod.MOMO.value:
            raise ValidationException("Order is not paid through the online wallet")
        if order["status"] != OrderStatus.PENDING.value or order["payment_status"] != PaymentStatus.UNPAID.value:
            raise InvalidTransitionException(
                f"Order {order['order_code']} is {order['status']} and {order['payment_status']}, it cannot be paid",
                current=order["status"], requested="paid"
            )
        if self.gateway is None:
            raise GatewayUnavailableException()

        attempt = order.get("payment_attempts", 0)
        payment_url = await self.gateway.create_payment_request(order, attempt=attempt)
        return await self.store.set_payment_link(order["_id"], payment_url, attempt + 1)
