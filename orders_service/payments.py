"""
MoMo wallet gateway integration.

Outbound: signed "create payment" requests that return a hosted payment page.
Inbound: IPN callbacks whose HMAC-SHA256 signature is checked before anything
touches an order.
"""
import hashlib
import hmac
import logging
import uuid
from typing import Optional

import httpx
from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import (
    GatewayUnavailableException, GatewayRejectedException,
    SignatureInvalidException, MissingFieldsException
)
from orders_service.models import PaymentResult, PaymentEventDB

logger = logging.getLogger("orders-service.payments")

PAYMENT_EVENT_COLLECTION = "payment_events"

# Field order of the signed strings, fixed by the gateway (alphabetical)
CREATE_SIGNATURE_FIELDS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
CALLBACK_SIGNATURE_FIELDS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo", "orderType",
    "partnerCode", "payType", "requestId", "responseTime", "resultCode", "transId",
)
CALLBACK_REQUIRED_FIELDS = ("orderId", "transId", "resultCode", "signature")

REQUEST_TYPE = "payWithMethod"


def gateway_order_id(order_code: str, attempt: int) -> str:
    # The gateway refuses a reused orderId, so retries get a suffix
    return order_code if attempt == 0 else f"{order_code}_{attempt}"


def order_code_from_gateway_id(value: str) -> str:
    return value.split("_", 1)[0]


def order_amount(order: dict) -> int:
    return int(round(order["total"]))


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _field(value) -> str:
    return "" if value is None else str(value)


class MoMoGateway:
    def __init__(
        self,
        partner_code: str,
        access_key: str,
        secret_key: str,
        endpoint: str,
        redirect_url: str,
        ipn_url: str,
        partner_name: str = "",
        store_id: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.partner_code = partner_code
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint = endpoint
        self.redirect_url = redirect_url
        self.ipn_url = ipn_url
        self.partner_name = partner_name
        self.store_id = store_id
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "MoMoGateway":
        return cls(
            partner_code=settings.MOMO_PARTNER_CODE,
            access_key=settings.MOMO_ACCESS_KEY,
            secret_key=settings.MOMO_SECRET_KEY,
            endpoint=settings.MOMO_ENDPOINT,
            redirect_url=settings.PAYMENT_REDIRECT_URL,
            ipn_url=settings.PAYMENT_IPN_URL,
            partner_name=settings.MOMO_PARTNER_NAME,
            store_id=settings.MOMO_STORE_ID,
            timeout=settings.MOMO_TIMEOUT_SECONDS,
            transport=transport,
        )

    def sign(self, fields: tuple, values: dict) -> str:
        values = dict(values, accessKey=self.access_key, partnerCode=self.partner_code)
        raw = "&".join(f"{name}={_field(values.get(name))}" for name in fields)
        return hmac.new(self.secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()

    def build_create_request(self, order: dict, attempt: int, request_id: Optional[str] = None) -> dict:
        body = {
            "partnerCode": self.partner_code,
            "partnerName": self.partner_name,
            "storeId": self.store_id,
            "requestId": request_id or uuid.uuid4().hex,
            "amount": order_amount(order),
            "orderId": gateway_order_id(order["order_code"], attempt),
            "orderInfo": f"Payment for order {order['order_code']}",
            "redirectUrl": self.redirect_url,
            "ipnUrl": self.ipn_url,
            "lang": "vi",
            "requestType": REQUEST_TYPE,
            "autoCapture": True,
            "extraData": "",
            "orderGroupId": "",
        }
        body["signature"] = self.sign(CREATE_SIGNATURE_FIELDS, body)
        return body

    async def create_payment_request(self, order: dict, attempt: int = 0,
                                     request_id: Optional[str] = None) -> str:
        """Ask the gateway for a hosted payment page and return its URL."""
        body = self.build_create_request(order, attempt, request_id)
        async with httpx.AsyncClient(transport=self.transport) as client:
            try:
                response = await client.post(self.endpoint, json=body, timeout=self.timeout)
            except httpx.RequestError as e:
                logger.warning(f"MoMo request failed: {e}", extra={"order_code": order["order_code"]})
                raise GatewayUnavailableException()

        if response.status_code >= 500:
            raise GatewayUnavailableException()
        try:
            data = response.json()
        except ValueError:
            raise GatewayRejectedException("Payment gateway returned an unreadable response")

        result_code = _as_int(data.get("resultCode"))
        if response.status_code >= 400 or result_code != 0 or not data.get("payUrl"):
            logger.warning(
                f"MoMo rejected payment request: {data.get('message')}",
                extra={"order_code": order["order_code"], "outcome": result_code}
            )
            raise GatewayRejectedException(
                f"Payment gateway error: {data.get('message') or 'Unknown error'}",
                result_code=result_code
            )
        return data["payUrl"]

    def verify_callback(self, payload: dict):
        """Raise unless the callback carries every required field and a valid signature."""
        missing = [
            name for name in CALLBACK_REQUIRED_FIELDS
            if payload.get(name) is None or payload.get(name) == ""
        ]
        if missing:
            raise MissingFieldsException(missing)

        expected = self.sign(CALLBACK_SIGNATURE_FIELDS, payload)
        if not hmac.compare_digest(expected.encode(), str(payload["signature"]).encode()):
            raise SignatureInvalidException()


class PaymentReconciler:
    """Turns verified gateway callbacks into payment results on orders."""

    def __init__(self, gateway: MoMoGateway, store, lifecycle, db: AsyncIOMotorDatabase):
        self.gateway = gateway
        self.store = store
        self.lifecycle = lifecycle
        self.events = db[PAYMENT_EVENT_COLLECTION]

    async def _record(self, payload: dict, outcome: str, order: Optional[dict] = None):
        event = PaymentEventDB(
            gateway_order_id=_field(payload.get("orderId")) or None,
            order_id=str(order["_id"]) if order else None,
            transaction_id=_field(payload.get("transId")) or None,
            result_code=_as_int(payload.get("resultCode")),
            amount=_as_int(payload.get("amount")),
            outcome=outcome,
        )
        await self.events.insert_one(event.dict(by_alias=True, exclude={"id"}))

    async def handle_callback(self, payload: dict) -> str:
        """Verify, then apply a gateway callback. Returns the recorded outcome.

        Nothing about the order is read or written before the signature check
        has passed.
        """
        try:
            self.gateway.verify_callback(payload)
        except MissingFieldsException as e:
            logger.warning(f"Rejected gateway callback: {e.detail}", extra={"outcome": "missing_fields"})
            await self._record(payload, "missing_fields")
            return "missing_fields"
        except SignatureInvalidException:
            logger.warning(
                "Rejected gateway callback: invalid signature",
                extra={"outcome": "signature_invalid", "order_code": _field(payload.get("orderId"))}
            )
            await self._record(payload, "signature_invalid")
            return "signature_invalid"

        order = await self.store.find_by_code(order_code_from_gateway_id(str(payload["orderId"])))
        if order is None:
            logger.warning("Callback for unknown order", extra={"order_code": payload["orderId"], "outcome": "unknown_order"})
            await self._record(payload, "unknown_order")
            return "unknown_order"

        result_code = _as_int(payload["resultCode"])
        if result_code == 0 and _as_int(payload.get("amount")) != order_amount(order):
            logger.error(
                "Callback amount does not match order total",
                extra={"order_id": str(order["_id"]), "order_code": order["order_code"], "outcome": "amount_mismatch"}
            )
            await self._record(payload, "amount_mismatch", order)
            return "amount_mismatch"

        result = PaymentResult.SUCCESS if result_code == 0 else PaymentResult.FAILURE
        await self.lifecycle.apply_payment_result(order["_id"], result, transaction_id=str(payload["transId"]))
        await self._record(payload, result.value, order)
        return result.value
