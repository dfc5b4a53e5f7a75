import asyncio

import httpx
import pytest

from shared.utils import (
    InsufficientStockException, InvalidTransitionException, NotFoundException, ForbiddenException,
    ValidationException, ConflictException, PartialFailureException, GatewayUnavailableException
)
from orders_service import lifecycle as lifecycle_module
from orders_service.lifecycle import OrderLifecycleManager, TRANSITIONS, SYSTEM_ACTOR, Actor
from orders_service.models import OrderStatus
from tests.conftest import ADDRESS, make_gateway


# --- Checkout ---

async def test_end_to_end_cash_on_delivery(buy_now, lifecycle, inventory, make_product, admin, customer, notifier):
    p1 = await make_product(price=100.0, stock=5)

    order = await buy_now([(p1, 3)], "cod")

    assert order["status"] == "pending"
    assert order["payment_status"] == "unpaid"
    assert order["total"] == 300
    assert order["order_code"].startswith("ORD") and len(order["order_code"]) == 15
    assert await inventory.current_stock(p1) == 2

    confirmed = await lifecycle.transition(order["_id"], admin, OrderStatus.CONFIRMED)
    assert confirmed["status"] == "confirmed"
    assert confirmed["confirmed_at"] is not None

    shipping = await lifecycle.transition(order["_id"], admin, "shipping")
    assert shipping["status"] == "shipping"

    with pytest.raises(InvalidTransitionException):
        await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)
    with pytest.raises(InvalidTransitionException):
        await lifecycle.transition(order["_id"], admin, OrderStatus.CANCELLED)
    assert await inventory.current_stock(p1) == 2
    assert [e for e, _ in notifier.events] == ["order_created", "order_status_changed", "order_status_changed"]


async def test_snapshot_of_product_fields(buy_now, make_product, db):
    pid = await make_product(name="Kettle", price=250.0, stock=3)

    order = await buy_now([(pid, 1)])
    await db.products.update_one({"name": "Kettle"}, {"$set": {"price": 999.0}})

    item = order["items"][0]
    assert item == {
        "product_id": pid, "name": "Kettle", "price": 250.0, "quantity": 1,
        "image": "https://cdn.test/kettle.png",
    }


async def test_duplicate_lines_are_merged(buy_now, make_product, inventory):
    pid = await make_product(stock=5)

    order = await buy_now([(pid, 1), (pid, 2)])

    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert await inventory.current_stock(pid) == 2


async def test_partial_reservation_is_rolled_back(buy_now, make_product, inventory, db):
    p1 = await make_product(name="Cup", stock=10)
    p2 = await make_product(name="Plate", stock=5)

    with pytest.raises(InsufficientStockException) as exc:
        await buy_now([(p1, 1), (p2, 1000)])

    assert exc.value.details["product_id"] == p2
    assert await inventory.current_stock(p1) == 10
    assert await inventory.current_stock(p2) == 5
    assert await db.orders.count_documents({}) == 0


async def test_invalid_address_rejected_before_stock_moves(lifecycle, make_product, inventory, customer):
    pid = await make_product(stock=5)

    with pytest.raises(ValidationException):
        await lifecycle.create_order(
            user_id=customer.id,
            shipping_address=dict(ADDRESS, phone="123"),
            payment_method="cod",
            source="buy_now",
            items=[{"product_id": pid, "quantity": 1}],
        )
    assert await inventory.current_stock(pid) == 5


async def test_inactive_product_rejected(buy_now, make_product, inventory):
    pid = await make_product(stock=5, is_active=False)

    with pytest.raises(ValidationException):
        await buy_now([(pid, 1)])
    assert await inventory.current_stock(pid) == 5


async def test_non_positive_quantity_rejected(buy_now, make_product):
    pid = await make_product(stock=5)

    with pytest.raises(ValidationException):
        await buy_now([(pid, 0)])


async def test_no_oversell_between_two_buyers(buy_now, make_product, inventory, db):
    pid = await make_product(stock=1)

    results = await asyncio.gather(
        buy_now([(pid, 1)], user_id="user-a"),
        buy_now([(pid, 1)], user_id="user-b"),
        return_exceptions=True
    )

    assert sum(isinstance(r, dict) for r in results) == 1
    assert sum(isinstance(r, InsufficientStockException) for r in results) == 1
    assert await inventory.current_stock(pid) == 0
    assert await db.orders.count_documents({}) == 1


async def test_cart_checkout_removes_only_purchased_items(lifecycle, carts, inventory, make_product, customer):
    p1 = await make_product(name="Pen", price=10.0, stock=10)
    p2 = await make_product(name="Ink", price=5.0, stock=10)
    await carts.add_item(customer.id, await inventory.get_product(p1), 2)
    await carts.add_item(customer.id, await inventory.get_product(p2), 1)

    order = await lifecycle.create_order(
        user_id=customer.id, shipping_address=ADDRESS, payment_method="cod",
        source="cart", cart_item_ids=[p1],
    )

    assert [item["product_id"] for item in order["items"]] == [p1]
    assert order["total"] == 20.0
    remaining = await carts.get_items(customer.id)
    assert [item["product_id"] for item in remaining] == [p2]


async def test_empty_cart_checkout_rejected(lifecycle, customer):
    with pytest.raises(ValidationException):
        await lifecycle.create_order(
            user_id=customer.id, shipping_address=ADDRESS, payment_method="cod", source="cart"
        )


async def test_idempotency_key_replays_order(buy_now, make_product, inventory, db):
    pid = await make_product(stock=5)

    first = await buy_now([(pid, 2)], idempotency_key="abc-123")
    second = await buy_now([(pid, 2)], idempotency_key="abc-123")

    assert second["_id"] == first["_id"]
    assert await inventory.current_stock(pid) == 3
    assert await db.orders.count_documents({}) == 1


async def test_idempotency_key_scoped_per_user(buy_now, make_product, db):
    pid = await make_product(stock=5)

    a = await buy_now([(pid, 1)], user_id="user-a", idempotency_key="same")
    b = await buy_now([(pid, 1)], user_id="user-b", idempotency_key="same")

    assert a["_id"] != b["_id"]


async def test_order_code_collision_is_retried(buy_now, make_product, store, inventory, monkeypatch):
    await store.orders.create_index("order_code", unique=True)
    codes = iter(["ORD000000011111", "ORD000000011111", "ORD000000022222"])
    monkeypatch.setattr(lifecycle_module, "generate_order_code", lambda: next(codes))
    pid = await make_product(stock=5)

    first = await buy_now([(pid, 1)])
    second = await buy_now([(pid, 1)])

    assert first["order_code"] == "ORD000000011111"
    assert second["order_code"] == "ORD000000022222"
    assert await inventory.current_stock(pid) == 3


async def test_order_code_exhaustion_rolls_back(store, inventory, carts, make_product, monkeypatch):
    await store.orders.create_index("order_code", unique=True)
    monkeypatch.setattr(lifecycle_module, "generate_order_code", lambda: "ORD000000011111")
    manager = OrderLifecycleManager(store, inventory, carts, code_max_attempts=2)
    pid = await make_product(stock=5)
    items = [{"product_id": pid, "quantity": 1}]

    await manager.create_order("user-1", ADDRESS, "cod", source="buy_now", items=items)
    with pytest.raises(ConflictException):
        await manager.create_order("user-1", ADDRESS, "cod", source="buy_now", items=items)

    assert await inventory.current_stock(pid) == 4


async def test_momo_order_gets_payment_url(buy_now, make_product, gateway_requests):
    pid = await make_product(price=120.5, stock=5)

    order = await buy_now([(pid, 2)], "momo")

    assert order["payment_url"] == f"https://pay.test/{order['order_code']}"
    assert order["payment_attempts"] == 1
    assert gateway_requests[0]["orderId"] == order["order_code"]
    assert gateway_requests[0]["amount"] == 241


async def test_gateway_outage_does_not_fail_checkout(store, inventory, carts, make_product):
    def handler(request):
        raise httpx.ConnectError("connection refused")
    manager = OrderLifecycleManager(store, inventory, carts, gateway=make_gateway(handler))
    pid = await make_product(stock=5)

    order = await manager.create_order(
        "user-1", ADDRESS, "momo", source="buy_now", items=[{"product_id": pid, "quantity": 1}]
    )

    assert order["payment_url"] == ""
    assert order["status"] == "pending"
    assert await inventory.current_stock(pid) == 4

    with pytest.raises(GatewayUnavailableException):
        await manager.request_payment_url(order["_id"], Actor(id="user-1"))


async def test_payment_url_retry_uses_fresh_gateway_order_id(buy_now, lifecycle, make_product, customer, gateway_requests):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "momo")

    again = await lifecycle.request_payment_url(order["_id"], customer)

    assert gateway_requests[-1]["orderId"] == f"{order['order_code']}_1"
    assert again["payment_attempts"] == 2
    assert again["payment_url"].endswith("_1")


async def test_payment_url_refused_for_cod(buy_now, lifecycle, make_product, customer):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "cod")

    with pytest.raises(ValidationException):
        await lifecycle.request_payment_url(order["_id"], customer)


# --- Access ---

async def test_other_users_order_looks_missing(buy_now, lifecycle, make_product):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)])
    stranger = Actor(id="someone-else")

    with pytest.raises(NotFoundException):
        await lifecycle.get_order(order["_id"], stranger)
    with pytest.raises(NotFoundException):
        await lifecycle.transition(order["_id"], stranger, OrderStatus.CANCELLED)


async def test_customer_cannot_confirm(buy_now, lifecycle, make_product, customer):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)])

    with pytest.raises(ForbiddenException):
        await lifecycle.transition(order["_id"], customer, OrderStatus.CONFIRMED)


# --- State machine ---

DISALLOWED = [
    (current, target)
    for current in OrderStatus
    for target in OrderStatus
    if target not in TRANSITIONS[current]
]


@pytest.mark.parametrize("current,target", DISALLOWED)
async def test_disallowed_transitions_leave_order_unchanged(buy_now, lifecycle, make_product, db, current, target):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)])
    await db.orders.update_one({"_id": order["_id"]}, {"$set": {"status": current.value}})
    before = await db.orders.find_one({"_id": order["_id"]})

    with pytest.raises(InvalidTransitionException) as exc:
        await lifecycle.transition(order["_id"], SYSTEM_ACTOR, target)

    assert exc.value.details == {"current": current.value, "requested": target.value}
    assert await db.orders.find_one({"_id": order["_id"]}) == before


async def test_unknown_status_rejected(buy_now, lifecycle, make_product, admin):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)])

    with pytest.raises(ValidationException):
        await lifecycle.transition(order["_id"], admin, "teleported")


# --- Cancellation ---

async def test_cancel_restores_stock_exactly_once(buy_now, lifecycle, make_product, inventory, customer, notifier):
    p1 = await make_product(stock=5)
    order = await buy_now([(p1, 2)])
    assert await inventory.current_stock(p1) == 3

    cancelled = await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)

    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_at"] is not None
    assert await inventory.current_stock(p1) == 5

    with pytest.raises(InvalidTransitionException):
        await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)
    assert await inventory.current_stock(p1) == 5
    assert notifier.events[-1] == ("order_cancelled", order["order_code"])


async def test_confirmed_order_can_be_cancelled(buy_now, lifecycle, make_product, inventory, admin):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 4)])
    await lifecycle.transition(order["_id"], admin, OrderStatus.CONFIRMED)

    cancelled = await lifecycle.transition(order["_id"], admin, OrderStatus.CANCELLED)

    assert cancelled["status"] == "cancelled"
    assert await inventory.current_stock(pid) == 5


async def test_concurrent_cancels_release_once(buy_now, lifecycle, make_product, inventory, customer, admin):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 2)])

    results = await asyncio.gather(
        lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED),
        lifecycle.transition(order["_id"], admin, OrderStatus.CANCELLED),
        return_exceptions=True
    )

    assert sum(isinstance(r, dict) for r in results) >= 1
    assert await inventory.current_stock(pid) == 5


async def test_failed_release_keeps_order_open_and_retry_skips_released(
    buy_now, lifecycle, make_product, inventory, customer, monkeypatch
):
    p1 = await make_product(name="Bowl", stock=5)
    p2 = await make_product(name="Spoon", stock=5)
    order = await buy_now([(p1, 2), (p2, 1)])

    original = inventory.adjust_stock

    async def flaky(product_id, delta):
        if product_id == p2:
            raise NotFoundException(f"Product {product_id} not found")
        return await original(product_id, delta)

    monkeypatch.setattr(inventory, "adjust_stock", flaky)
    with pytest.raises(PartialFailureException) as exc:
        await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)

    assert [f["product_id"] for f in exc.value.failed_items] == [p2]
    stored = await lifecycle.store.find_by_id(order["_id"])
    assert stored["status"] == "pending"
    assert stored["released_items"] == [0]
    assert await inventory.current_stock(p1) == 5

    with pytest.raises(InvalidTransitionException):
        await lifecycle.transition(order["_id"], SYSTEM_ACTOR, OrderStatus.CONFIRMED)

    monkeypatch.setattr(inventory, "adjust_stock", original)
    cancelled = await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)

    assert cancelled["status"] == "cancelled"
    assert await inventory.current_stock(p1) == 5
    assert await inventory.current_stock(p2) == 5


def run_after_first_claim(monkeypatch, store, action):
    """Run ``action(order_id)`` right after a cancellation claims its first item."""
    original = store.claim_item_release
    fired = []

    async def claim(order_id, index, expected_status):
        claimed = await original(order_id, index, expected_status)
        if claimed and not fired:
            fired.append(index)
            await action(order_id)
        return claimed

    monkeypatch.setattr(store, "claim_item_release", claim)
    return original


async def test_payment_during_cancel_keeps_stock_reserved(
    buy_now, lifecycle, store, make_product, inventory, customer, admin, monkeypatch
):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 2)], "momo")

    async def pay(order_id):
        await lifecycle.apply_payment_result(order_id, "success", transaction_id="T-race")

    original = run_after_first_claim(monkeypatch, store, pay)
    with pytest.raises(ConflictException):
        await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)
    monkeypatch.setattr(store, "claim_item_release", original)

    stored = await store.find_by_id(order["_id"])
    assert stored["status"] == "pending"
    assert stored["payment_status"] == "paid"
    assert stored["released_items"] == []
    assert await inventory.current_stock(pid) == 3

    await lifecycle.transition(order["_id"], admin, OrderStatus.CONFIRMED)
    shipped = await lifecycle.transition(order["_id"], admin, OrderStatus.SHIPPING)
    assert shipped["status"] == "shipping"
    assert await inventory.current_stock(pid) == 3


async def test_confirm_during_cancel_is_refused(
    buy_now, lifecycle, store, make_product, inventory, customer, admin, monkeypatch
):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 2)])
    refused = []

    async def confirm(order_id):
        try:
            await lifecycle.transition(order_id, admin, OrderStatus.CONFIRMED)
        except InvalidTransitionException as e:
            refused.append(e)

    run_after_first_claim(monkeypatch, store, confirm)
    cancelled = await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)

    assert len(refused) == 1
    assert cancelled["status"] == "cancelled"
    assert cancelled["confirmed_at"] is None
    assert await inventory.current_stock(pid) == 5


async def test_lost_cancel_that_cannot_reserve_again_stays_cancellable_only(
    buy_now, lifecycle, store, make_product, inventory, customer, admin, monkeypatch
):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 2)], "momo")
    original_adjust = inventory.adjust_stock

    async def no_reservations(product_id, delta):
        if delta < 0:
            raise InsufficientStockException(product_id, -delta, available=0)
        return await original_adjust(product_id, delta)

    async def pay(order_id):
        await lifecycle.apply_payment_result(order_id, "success", transaction_id="T-race")
        monkeypatch.setattr(inventory, "adjust_stock", no_reservations)

    original_claim = run_after_first_claim(monkeypatch, store, pay)
    with pytest.raises(ConflictException):
        await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)
    monkeypatch.setattr(store, "claim_item_release", original_claim)
    monkeypatch.setattr(inventory, "adjust_stock", original_adjust)

    stored = await store.find_by_id(order["_id"])
    assert stored["status"] == "pending"
    assert stored["released_items"] == [0]
    assert await inventory.current_stock(pid) == 5

    with pytest.raises(InvalidTransitionException):
        await lifecycle.transition(order["_id"], admin, OrderStatus.CONFIRMED)

    cancelled = await lifecycle.transition(order["_id"], admin, OrderStatus.CANCELLED)
    assert cancelled["status"] == "cancelled"
    assert cancelled["payment_status"] == "refunded"
    assert await inventory.current_stock(pid) == 5


async def test_cancelling_paid_order_marks_refund(buy_now, lifecycle, make_product, admin):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "momo")
    await lifecycle.apply_payment_result(order["_id"], "success", transaction_id="T-1")

    cancelled = await lifecycle.transition(order["_id"], admin, OrderStatus.CANCELLED)

    assert cancelled["payment_status"] == "refunded"


# --- Payment ---

async def test_payment_success_is_idempotent(buy_now, lifecycle, make_product, notifier, db):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "momo")

    first = await lifecycle.apply_payment_result(order["_id"], "success", transaction_id="T-1")
    stamp = (await db.orders.find_one({"_id": order["_id"]}))["updated_at"]
    second = await lifecycle.apply_payment_result(order["_id"], "success", transaction_id="T-1")

    assert first["payment_status"] == second["payment_status"] == "paid"
    assert second["payment_transaction_id"] == "T-1"
    assert (await db.orders.find_one({"_id": order["_id"]}))["updated_at"] == stamp
    assert [e for e, _ in notifier.events].count("order_paid") == 1


async def test_payment_failure_leaves_order_unpaid(buy_now, lifecycle, make_product):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "momo")

    result = await lifecycle.apply_payment_result(order["_id"], "failure")

    assert result["payment_status"] == "unpaid"
    assert result["status"] == "pending"


async def test_late_payment_on_cancelled_order_is_refunded(buy_now, lifecycle, make_product, customer):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "momo")
    await lifecycle.transition(order["_id"], customer, OrderStatus.CANCELLED)

    result = await lifecycle.apply_payment_result(order["_id"], "success", transaction_id="T-9")

    assert result["status"] == "cancelled"
    assert result["payment_status"] == "refunded"


async def test_admin_payment_status_changes(buy_now, lifecycle, make_product, admin, customer):
    pid = await make_product(stock=5)
    order = await buy_now([(pid, 1)], "cod")

    with pytest.raises(ForbiddenException):
        await lifecycle.set_payment_status(order["_id"], customer, "paid")

    paid = await lifecycle.set_payment_status(order["_id"], admin, "paid")
    assert paid["payment_status"] == "paid"

    with pytest.raises(InvalidTransitionException):
        await lifecycle.set_payment_status(order["_id"], admin, "unpaid")

    refunded = await lifecycle.set_payment_status(order["_id"], admin, "refunded")
    assert refunded["payment_status"] == "refunded"
