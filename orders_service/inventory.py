import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from shared.utils import (
    NotFoundException, InsufficientStockException, ValidationException
)

logger = logging.getLogger("orders-service.inventory")

PRODUCT_COLLECTION = "products"


def product_oid(product_id: str) -> ObjectId:
    try:
        return ObjectId(product_id)
    except (InvalidId, TypeError):
        raise NotFoundException(f"Product {product_id} not found")


class InventoryLedger:
    """Per-product stock counters living on the product documents.

    Every change goes through :meth:`adjust_stock`, a single conditional
    ``find_one_and_update`` so concurrent reservations cannot oversell.
    The ledger does not remember which deltas were applied; callers that
    need exactly-once semantics track that themselves.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.products = db[PRODUCT_COLLECTION]

    async def get_product(self, product_id: str) -> dict:
        product = await self.products.find_one({"_id": product_oid(product_id)})
        if not product:
            raise NotFoundException(f"Product {product_id} not found")
        return product

    async def adjust_stock(self, product_id: str, delta: int) -> int:
        """Apply a signed delta and return the stock after the update.

        A negative delta only succeeds when the current stock covers it;
        otherwise ``InsufficientStockException`` is raised and nothing changes.
        """
        if delta == 0:
            raise ValidationException("Stock delta must be non-zero")

        query = {"_id": product_oid(product_id)}
        if delta < 0:
            query["stock"] = {"$gte": -delta}

        updated = await self.products.find_one_and_update(
            query,
            {"$inc": {"stock": delta}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER
        )
        if updated is not None:
            return updated["stock"]

        # Tell a missing product apart from a failed precondition
        product = await self.products.find_one({"_id": query["_id"]}, {"stock": 1, "name": 1})
        if product is None:
            raise NotFoundException(f"Product {product_id} not found")
        logger.info(
            "Stock reservation refused",
            extra={"product_id": product_id, "event": "insufficient_stock"}
        )
        raise InsufficientStockException(
            product_id, -delta, available=product.get("stock", 0), name=product.get("name")
        )

    async def current_stock(self, product_id: str) -> Optional[int]:
        product = await self.products.find_one({"_id": product_oid(product_id)}, {"stock": 1})
        return product["stock"] if product else None
