from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from motor.motor_asyncio import AsyncIOMotorDatabase

from app_logger import get_logger
from config import settings
from database import USERS, get_db, serialize, to_oid
from errors import InvalidInput
from schemas import Token, UserLogin, UserOut, UserRegister

log = get_logger("auth")

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user: UserOut) -> str:
    expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {"sub": user.id, "phone": user.phone, "is_admin": user.is_admin, "exp": expire}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _user_out(doc: dict[str, Any]) -> UserOut:
    d = serialize(doc)
    return UserOut(
        id=d["id"], name=d["name"], phone=d["phone"], email=d["email"],
        is_admin=bool(d.get("is_admin", False)),
    )


async def phone_is_unique(db: AsyncIOMotorDatabase, phone: str) -> bool:
    return await db[USERS].find_one({"phone": phone}) is None


async def register_user(db: AsyncIOMotorDatabase, data: UserRegister) -> UserOut:
    if not await phone_is_unique(db, data.phone):
        raise InvalidInput("Phone number already registered")
    doc = {
        "name": data.name,
        "phone": data.phone,
        "email": data.email,
        "password": hash_password(data.password),
        "is_admin": data.phone in settings.ADMIN_PHONES,
        "created_at": datetime.utcnow(),
    }
    result = await db[USERS].insert_one(doc)
    doc["_id"] = result.inserted_id
    log.info("Registered user %s", data.phone)
    return _user_out(doc)


async def login_user(db: AsyncIOMotorDatabase, data: UserLogin) -> Token:
    doc = await db[USERS].find_one({"phone": data.phone})
    if not doc or not verify_password(data.password, doc.get("password", "")):
        raise InvalidInput("Invalid credentials")
    user = _user_out(doc)
    return Token(access_token=create_access_token(user), user=user)


async def current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> UserOut:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception

    try:
        doc = await db[USERS].find_one({"_id": to_oid(user_id)})
    except InvalidInput:
        raise credentials_exception
    if not doc:
        raise credentials_exception
    return _user_out(doc)


async def require_admin(user: UserOut = Depends(current_user)) -> UserOut:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
