from datetime import datetime
from typing import Optional, List, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ReturnDocument, DESCENDING

from shared.utils import NotFoundException, ConflictException, ValidationException
from orders_service.models import OrderDB, OrderStatus, PaymentStatus, STATUS_TIMESTAMP_FIELDS

ORDER_COLLECTION = "orders"


def order_oid(order_id) -> ObjectId:
    if isinstance(order_id, ObjectId):
        return order_id
    try:
        return ObjectId(order_id)
    except (InvalidId, TypeError):
        raise NotFoundException("Order not found")


def build_order(data: dict) -> OrderDB:
    """Validate a new order document, raising ``ValidationException``."""
    try:
        return OrderDB(**data)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationException("Invalid order data", details=errors)


class OrderStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.orders = db[ORDER_COLLECTION]

    async def ensure_indexes(self):
        await self.orders.create_index("order_code", unique=True)
        await self.orders.create_index("idempotency_key", unique=True, sparse=True)
        await self.orders.create_index([("user_id", 1), ("created_at", DESCENDING)])
        await self.orders.create_index([("status", 1), ("payment_method", 1), ("pending_at", 1)])

    async def insert(self, order: OrderDB) -> dict:
        """Persist a validated order and return the stored document.

        ``DuplicateKeyError`` from the unique indexes propagates to the caller.
        """
        doc = order.dict(by_alias=True, exclude={"id"})
        if doc.get("idempotency_key") is None:
            doc.pop("idempotency_key", None)
        now = datetime.utcnow()
        doc["created_at"] = now
        doc["pending_at"] = now
        result = await self.orders.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def find_by_id(self, order_id) -> dict:
        order = await self.orders.find_one({"_id": order_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def find_by_code(self, order_code: str) -> Optional[dict]:
        return await self.orders.find_one({"order_code": order_code})

    async def find_by_idempotency_key(self, key: str) -> Optional[dict]:
        return await self.orders.find_one({"idempotency_key": key})

    async def _list(self, query: dict, page: int, limit: int) -> Tuple[List[dict], int]:
        skip = (page - 1) * limit
        total = await self.orders.count_documents(query)
        cursor = self.orders.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return await cursor.to_list(length=limit), total

    async def list_by_user(self, user_id: str, page: int = 1, limit: int = 10,
                           status: Optional[str] = None) -> Tuple[List[dict], int]:
        query = {"user_id": user_id}
        if status:
            query["status"] = status
        return await self._list(query, page, limit)

    async def list_all(self, page: int = 1, limit: int = 10,
                       status: Optional[str] = None) -> Tuple[List[dict], int]:
        query = {}
        if status:
            query["status"] = status
        return await self._list(query, page, limit)

    async def find_expired_unpaid(self, payment_method: str, cutoff: datetime) -> List[dict]:
        cursor = self.orders.find({
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.UNPAID.value,
            "payment_method": payment_method,
            "pending_at": {"$lt": cutoff},
        }).sort("pending_at", 1)
        return await cursor.to_list(length=None)

    async def _raise_missing_or_conflict(self, oid: ObjectId):
        if await self.orders.find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFoundException("Order not found")
        raise ConflictException()

    async def conditional_update_status(self, order_id, expected_status: Optional[str],
                                        new_status: str, extra_fields: Optional[dict] = None,
                                        extra_filter: Optional[dict] = None) -> dict:
        """Move an order to ``new_status`` if it is still in ``expected_status``.

        Stamps the timestamp of the new status and ``updated_at``. Raises
        ``ConflictException`` when the stored status (or ``extra_filter``)
        no longer matches.
        """
        oid = order_oid(order_id)
        now = datetime.utcnow()
        update = dict(extra_fields or {})
        update["status"] = new_status
        update[STATUS_TIMESTAMP_FIELDS[OrderStatus(new_status)]] = now
        update["updated_at"] = now

        query = {"_id": oid}
        if expected_status is not None:
            query["status"] = expected_status
        query.update(extra_filter or {})

        updated = await self.orders.find_one_and_update(
            query, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            await self._raise_missing_or_conflict(oid)
        return updated

    async def conditional_update_payment_status(self, order_id, expected_payment_status: str,
                                                new_payment_status: str, extra_fields: Optional[dict] = None,
                                                extra_filter: Optional[dict] = None) -> Optional[dict]:
        """Returns the updated order, or None if the precondition did not hold."""
        query = {"_id": order_oid(order_id), "payment_status": expected_payment_status}
        query.update(extra_filter or {})
        update = dict(extra_fields or {})
        update["payment_status"] = new_payment_status
        update["updated_at"] = datetime.utcnow()
        return await self.orders.find_one_and_update(
            query, {"$set": update}, return_document=ReturnDocument.AFTER
        )

    async def claim_item_release(self, order_id, index: int, expected_status: str) -> bool:
        result = await self.orders.update_one(
            {"_id": order_oid(order_id), "status": expected_status, "released_items": {"$ne": index}},
            {"$addToSet": {"released_items": index}}
        )
        return result.modified_count == 1

    async def unclaim_item_release(self, order_id, index: int):
        await self.orders.update_one(
            {"_id": order_oid(order_id)},
            {"$pull": {"released_items": index}}
        )

    async def set_payment_link(self, order_id, payment_url: str, attempts: int) -> dict:
        updated = await self.orders.find_one_and_update(
            {"_id": order_oid(order_id)},
            {"$set": {"payment_url": payment_url, "payment_attempts": attempts, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise NotFoundException("Order not found")
        return updated
