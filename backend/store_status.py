from __future__ import annotations
from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorDatabase

from app_logger import get_logger
from database import STORE_STATUS
from errors import InvalidInput
from schemas import StoreStatus

log = get_logger("store_status")


async def get_store_status(db: AsyncIOMotorDatabase) -> StoreStatus:
    doc = await db[STORE_STATUS].find_one({})
    # A store that was never toggled is open
    return StoreStatus(is_online=doc.get("is_online", True) if doc else True)


async def set_store_status(db: AsyncIOMotorDatabase, is_online: bool) -> StoreStatus:
    await db[STORE_STATUS].update_one(
        {}, {"$set": {"is_online": is_online, "updated_at": datetime.utcnow()}}, upsert=True
    )
    log.info("Store is now %s", "online" if is_online else "offline")
    return StoreStatus(is_online=is_online)


async def ensure_store_online(db: AsyncIOMotorDatabase) -> None:
    """Gate for the add-to-cart path. Order and payment APIs do not call this."""
    status = await get_store_status(db)
    if not status.is_online:
        raise InvalidInput("Store is currently offline and not accepting orders")
