from __future__ import annotations
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from database import PRODUCTS, create_document, get_documents, serialize, to_oid
from errors import InvalidInput, NotFound
from schemas import Product, ProductOut, ProductUpdate


class ProductCatalog:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list_products(
        self,
        q: Optional[str] = None,
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        limit: int = 200,
    ) -> list[ProductOut]:
        filter_dict: dict = {}
        if q:
            # Simple case-insensitive name search
            filter_dict["name"] = {"$regex": q, "$options": "i"}
        if category:
            filter_dict["category"] = category
        if featured is not None:
            filter_dict["featured"] = featured
        docs = await get_documents(self.db, PRODUCTS, filter_dict, limit=limit)
        return [ProductOut(**d) for d in docs]

    async def get_product(self, product_id: str) -> ProductOut:
        doc = await self.db[PRODUCTS].find_one({"_id": to_oid(product_id)})
        if not doc:
            raise NotFound("Product not found")
        return ProductOut(**serialize(doc))

    async def create_product(self, product: Product) -> ProductOut:
        saved = await create_document(self.db, PRODUCTS, product.model_dump())
        return ProductOut(**saved)

    async def update_product(self, product_id: str, changes: ProductUpdate) -> ProductOut:
        fields = changes.model_dump(exclude_unset=True)
        if not fields:
            raise InvalidInput("Nothing to update")
        oid = to_oid(product_id)
        result = await self.db[PRODUCTS].update_one(
            {"_id": oid}, {"$set": {**fields, "updated_at": datetime.utcnow()}}
        )
        if result.matched_count == 0:
            raise NotFound("Product not found")
        return await self.get_product(product_id)

    async def delete_product(self, product_id: str) -> None:
        # Orders keep their own item snapshots, so history is unaffected
        result = await self.db[PRODUCTS].delete_one({"_id": to_oid(product_id)})
        if result.deleted_count == 0:
            raise NotFound("Product not found")
