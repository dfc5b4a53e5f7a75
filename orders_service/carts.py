from datetime import datetime
from typing import Optional, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from orders_service.models import CartDB

CART_COLLECTION = "carts"


class CartStore:
    """The user's cart, read at checkout and trimmed after a purchase."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.carts = db[CART_COLLECTION]

    async def ensure_indexes(self):
        await self.carts.create_index("user_id", unique=True)

    async def get_cart(self, user_id: str) -> dict:
        cart = await self.carts.find_one({"user_id": user_id})
        if not cart:
            cart_db = CartDB(user_id=user_id, items=[])
            cart = cart_db.dict(by_alias=True, exclude={"id"})
            res = await self.carts.insert_one(cart)
            cart["_id"] = res.inserted_id
        return cart

    async def get_items(self, user_id: str, product_ids: Optional[List[str]] = None) -> List[dict]:
        cart = await self.carts.find_one({"user_id": user_id})
        items = cart.get("items", []) if cart else []
        if product_ids is not None:
            wanted = set(product_ids)
            items = [item for item in items if item["product_id"] in wanted]
        return items

    async def add_item(self, user_id: str, product: dict, quantity: int) -> dict:
        product_id = str(product["_id"])
        await self.get_cart(user_id)
        # Bump the quantity when the product is already in the cart
        result = await self.carts.update_one(
            {"user_id": user_id, "items.product_id": product_id},
            {
                "$inc": {"items.$.quantity": quantity},
                "$set": {"items.$.price": float(product["price"]), "updated_at": datetime.utcnow()}
            }
        )
        if result.matched_count == 0:
            await self.carts.update_one(
                {"user_id": user_id},
                {
                    "$push": {"items": {
                        "product_id": product_id,
                        "quantity": quantity,
                        "price": float(product["price"]),
                        "name": product.get("name"),
                    }},
                    "$set": {"updated_at": datetime.utcnow()}
                }
            )
        return await self.get_cart(user_id)

    async def remove_items(self, user_id: str, product_ids: List[str]):
        await self.carts.update_one(
            {"user_id": user_id},
            {
                "$pull": {"items": {"product_id": {"$in": list(product_ids)}}},
                "$set": {"updated_at": datetime.utcnow()}
            }
        )
