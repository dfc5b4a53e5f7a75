from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional

from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse, ValidationException, InsufficientStockException,
    setup_exception_handlers, require_auth, require_admin
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from orders_service.schemas import (
    CartItemAdd, CartItemResponse, CartResponse, OrderCreate, OrderResponse, OrderListResponse,
    OrderStatusUpdate, StockAdjustment, StockResponse, SweepResponse
)
from orders_service.models import OrderStatus, PaymentMethod
from orders_service.inventory import InventoryLedger
from orders_service.store import OrderStore
from orders_service.carts import CartStore
from orders_service.lifecycle import OrderLifecycleManager, Actor
from orders_service.payments import MoMoGateway, PaymentReconciler
from orders_service.notifications import Notifier
from orders_service.sweeper import ExpirySweeper

# Setup Logging
logger = setup_logging("orders-service")

app = FastAPI(title="Orders Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="orders-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def wire_services(app: FastAPI, db, gateway: Optional[MoMoGateway] = None, notifier: Optional[Notifier] = None):
    """Build the order components on top of one database handle."""
    app.mongodb = db
    app.inventory = InventoryLedger(db)
    app.order_store = OrderStore(db)
    app.carts = CartStore(db)
    app.gateway = gateway or MoMoGateway.from_settings(settings)
    app.lifecycle = OrderLifecycleManager(
        app.order_store, app.inventory, app.carts,
        gateway=app.gateway,
        notifier=notifier or Notifier(settings.NOTIFY_WEBHOOK_URL),
        code_max_attempts=settings.ORDER_CODE_MAX_ATTEMPTS,
    )
    app.payments = PaymentReconciler(app.gateway, app.order_store, app.lifecycle, db)
    app.sweeper = ExpirySweeper(
        app.order_store, app.lifecycle,
        expiry_minutes=settings.ORDER_EXPIRY_MINUTES,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
    )


@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    wire_services(app, app.mongodb_client[settings.MONGO_DB])
    # Indexes
    await app.order_store.ensure_indexes()
    await app.carts.ensure_indexes()
    if settings.SWEEPER_ENABLED:
        app.sweeper.start()

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.sweeper.stop()
    app.mongodb_client.close()

# --- Dependencies ---
async def get_current_user(request: Request, user: dict = Depends(require_auth)) -> Actor:
    request.state.user_id = user["sub"]
    return Actor(id=user["sub"], role=user.get("role", "user"))

async def get_admin(request: Request, user: dict = Depends(require_admin)) -> Actor:
    request.state.user_id = user["sub"]
    return Actor(id=user["sub"], role=user["role"])

# --- Helper ---
def cart_response(cart: dict) -> CartResponse:
    items = [CartItemResponse(**item) for item in cart.get("items", [])]
    return CartResponse(
        user_id=cart["user_id"],
        items=items,
        updated_at=cart["updated_at"],
        total=sum(item.price * item.quantity for item in items)
    )

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(request: Request, actor: Actor = Depends(get_current_user)):
    cart = await app.carts.get_cart(actor.id)
    return SuccessResponse(data=cart_response(cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(item: CartItemAdd, actor: Actor = Depends(get_current_user)):
    product = await app.inventory.get_product(item.product_id)
    if not product.get("is_active", True):
        raise ValidationException(f"Product {product.get('name', item.product_id)} is not available")
    if product["stock"] < item.quantity:
        raise InsufficientStockException(
            item.product_id, item.quantity, available=product["stock"], name=product.get("name")
        )
    cart = await app.carts.add_item(actor.id, product, item.quantity)
    return SuccessResponse(data=cart_response(cart))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: str, actor: Actor = Depends(get_current_user)):
    await app.carts.remove_items(actor.id, [product_id])
    cart = await app.carts.get_cart(actor.id)
    return SuccessResponse(data=cart_response(cart))

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse])
@limiter.limit("30/minute")
async def create_order(
    order_in: OrderCreate,
    request: Request,
    idempotency_key: Optional[str] = Header(None),
    actor: Actor = Depends(get_current_user)
):
    order = await app.lifecycle.create_order(
        user_id=actor.id,
        shipping_address=order_in.shipping_address.dict(),
        payment_method=order_in.payment_method.value,
        source=order_in.source,
        items=[i.dict() for i in order_in.items] if order_in.items else None,
        cart_item_ids=order_in.cart_item_ids,
        note=order_in.note or "",
        idempotency_key=idempotency_key,
    )
    message = "Order created successfully"
    if order["payment_method"] == PaymentMethod.MOMO.value and not order.get("payment_url"):
        message = "Order created but payment URL generation failed, please retry payment"
    return SuccessResponse(data=OrderResponse.from_doc(order), message=message)

@app.get("/orders", response_model=SuccessResponse[OrderListResponse])
@limiter.limit("60/minute")
async def list_orders(
    request: Request,
    actor: Actor = Depends(get_current_user),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status: Optional[OrderStatus] = None
):
    orders, total = await app.order_store.list_by_user(
        actor.id, page, limit, status.value if status else None
    )
    return SuccessResponse(data=OrderListResponse(
        orders=[OrderResponse.from_doc(doc) for doc in orders],
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, actor: Actor = Depends(get_current_user)):
    order = await app.lifecycle.get_order(order_id, actor)
    return SuccessResponse(data=OrderResponse.from_doc(order))

@app.put("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(order_id: str, actor: Actor = Depends(get_current_user)):
    order = await app.lifecycle.transition(order_id, actor, OrderStatus.CANCELLED)
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Order cancelled")

@app.post("/orders/{order_id}/payment", response_model=SuccessResponse[OrderResponse])
async def request_payment(order_id: str, actor: Actor = Depends(get_current_user)):
    order = await app.lifecycle.request_payment_url(order_id, actor)
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Payment URL created")

# Administration
@app.get("/manage/orders", response_model=SuccessResponse[OrderListResponse])
async def list_all_orders(
    actor: Actor = Depends(get_admin),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status: Optional[OrderStatus] = None
):
    orders, total = await app.order_store.list_all(page, limit, status.value if status else None)
    return SuccessResponse(data=OrderListResponse(
        orders=[OrderResponse.from_doc(doc) for doc in orders],
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/manage/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_any_order(order_id: str, actor: Actor = Depends(get_admin)):
    order = await app.lifecycle.get_order(order_id, actor)
    return SuccessResponse(data=OrderResponse.from_doc(order))

@app.put("/manage/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(order_id: str, update: OrderStatusUpdate, actor: Actor = Depends(get_admin)):
    order = None
    if update.status is not None:
        order = await app.lifecycle.transition(order_id, actor, update.status)
    if update.payment_status is not None:
        order = await app.lifecycle.set_payment_status(order_id, actor, update.payment_status)
    return SuccessResponse(data=OrderResponse.from_doc(order), message="Order updated")

@app.post("/manage/orders/sweep", response_model=SuccessResponse[SweepResponse])
async def sweep_unpaid_orders(actor: Actor = Depends(get_admin)):
    summary = await app.sweeper.run_once()
    return SuccessResponse(data=SweepResponse(**summary))

@app.post("/manage/products/{product_id}/stock", response_model=SuccessResponse[StockResponse])
async def adjust_product_stock(product_id: str, adjustment: StockAdjustment, actor: Actor = Depends(get_admin)):
    stock = await app.inventory.adjust_stock(product_id, adjustment.delta)
    logger.info(
        f"Stock adjusted by {adjustment.delta}",
        extra={"product_id": product_id, "user_id": actor.id, "event": "stock_adjusted"}
    )
    return SuccessResponse(data=StockResponse(product_id=product_id, stock=stock))

# Payment gateway
@app.post("/payment/momo/callback", response_model=SuccessResponse[dict])
async def momo_callback(request: Request):
    # Always acknowledged; the outcome is only recorded in payment_events
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    await app.payments.handle_callback(payload)
    return SuccessResponse(data={}, message="Callback received")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}"
        )

    return HealthResponse(
        service="orders-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )


def run():
    import uvicorn
    uvicorn.run("orders_service.main:app", host="0.0.0.0", port=8003)
