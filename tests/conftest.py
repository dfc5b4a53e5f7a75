import json
from datetime import datetime

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from orders_service.inventory import InventoryLedger
from orders_service.store import OrderStore
from orders_service.carts import CartStore
from orders_service.lifecycle import OrderLifecycleManager, Actor
from orders_service.payments import MoMoGateway, PaymentReconciler
from orders_service.notifications import Notifier
from orders_service.sweeper import ExpirySweeper

ADDRESS = {
    "full_name": "Nguyen Van A",
    "phone": "0901234567",
    "province": "Ho Chi Minh",
    "district": "District 1",
    "ward": "Ben Nghe",
    "street": "12 Le Loi",
}

GATEWAY_SECRET = "test-secret-key"


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__()
        self.events = []

    async def notify(self, event, order):
        self.events.append((event, order["order_code"]))


def pay_url_handler(requests_seen):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests_seen.append(body)
        return httpx.Response(200, json={
            "resultCode": 0,
            "message": "Successful.",
            "payUrl": f"https://pay.test/{body['orderId']}",
        })
    return handler


def make_gateway(handler) -> MoMoGateway:
    return MoMoGateway(
        partner_code="MOMOTEST",
        access_key="test-access-key",
        secret_key=GATEWAY_SECRET,
        endpoint="https://gateway.test/v2/gateway/api/create",
        redirect_url="https://shop.test/payment/result",
        ipn_url="https://shop.test/payment/momo/callback",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def make_product(db):
    async def _make(name="Widget", price=100.0, stock=5, is_active=True):
        result = await db.products.insert_one({
            "name": name,
            "price": price,
            "stock": stock,
            "is_active": is_active,
            "image_url": f"https://cdn.test/{name.lower()}.png",
            "created_at": datetime.utcnow(),
        })
        return str(result.inserted_id)
    return _make


@pytest.fixture
def gateway_requests():
    return []


@pytest.fixture
def gateway(gateway_requests):
    return make_gateway(pay_url_handler(gateway_requests))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def inventory(db):
    return InventoryLedger(db)


@pytest.fixture
def store(db):
    return OrderStore(db)


@pytest.fixture
def carts(db):
    return CartStore(db)


@pytest.fixture
def lifecycle(store, inventory, carts, gateway, notifier):
    return OrderLifecycleManager(store, inventory, carts, gateway=gateway, notifier=notifier)


@pytest.fixture
def reconciler(gateway, store, lifecycle, db):
    return PaymentReconciler(gateway, store, lifecycle, db)


@pytest.fixture
def sweeper(store, lifecycle):
    return ExpirySweeper(store, lifecycle, expiry_minutes=100, interval_seconds=3600)


@pytest.fixture
def customer():
    return Actor(id="user-1", role="user")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def buy_now(lifecycle, customer):
    """Place a buy-now order for ``customer``: ``await buy_now([(pid, qty)], "cod")``."""
    async def _buy(lines, payment_method="cod", user_id=None, **kwargs):
        return await lifecycle.create_order(
            user_id=user_id or customer.id,
            shipping_address=ADDRESS,
            payment_method=payment_method,
            source="buy_now",
            items=[{"product_id": pid, "quantity": qty} for pid, qty in lines],
            **kwargs
        )
    return _buy
