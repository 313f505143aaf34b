import itertools
import re
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

from auth import create_access_token
from gateway import PaymentIntent, sign
from outbox import MemoryOutbox
from schemas import UserOut

GATEWAY_SECRET = "test-secret"


# ----- in-memory stand-in for the Motor database -----

_MISSING = object()


def _get_path(doc: dict, path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _match_value(value: Any, cond: Any) -> bool:
    if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$regex":
                flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
                if value is _MISSING or value is None or not re.search(arg, str(value), flags):
                    return False
            elif op == "$options":
                continue
            elif op == "$ne":
                if value is not _MISSING and value == arg:
                    return False
            elif op == "$in":
                if value is _MISSING or value not in arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value is not _MISSING and value == cond


def matches(doc: dict, flt: Optional[dict]) -> bool:
    for key, cond in (flt or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif not _match_value(_get_path(doc, key), cond):
            return False
    return True


def _sort_key(doc: dict, field: str) -> Any:
    value = _get_path(doc, field)
    return datetime.min if value is _MISSING or value is None else value


class Result:
    def __init__(self, **kw):
        self.__dict__.update(kw)


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs

    def sort(self, keys, direction=None):
        if isinstance(keys, str):
            keys = [(keys, direction or 1)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(d, field), reverse=order < 0)
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    def __aiter__(self):
        self._it = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return dict(next(self._it))
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self):
        self.docs: list[dict] = []
        self.fail_next: dict[str, Exception] = {}

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail_next.pop(op, None)
        if exc is not None:
            raise exc

    async def find_one(self, flt: Optional[dict] = None) -> Optional[dict]:
        self._maybe_fail("find_one")
        for d in self.docs:
            if matches(d, flt):
                return dict(d)
        return None

    def find(self, flt: Optional[dict] = None) -> FakeCursor:
        return FakeCursor([dict(d) for d in self.docs if matches(d, flt)])

    async def insert_one(self, doc: dict) -> Result:
        self._maybe_fail("insert_one")
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return Result(inserted_id=doc["_id"])

    async def update_one(self, flt: dict, update: dict, upsert: bool = False) -> Result:
        self._maybe_fail("update_one")
        for d in self.docs:
            if matches(d, flt):
                d.update(update.get("$set", {}))
                return Result(matched_count=1, modified_count=1)
        if upsert:
            doc = {k: v for k, v in flt.items() if not k.startswith("$")}
            doc.update(update.get("$set", {}))
            doc.setdefault("_id", ObjectId())
            self.docs.append(doc)
        return Result(matched_count=0, modified_count=0)

    async def delete_one(self, flt: dict) -> Result:
        for i, d in enumerate(self.docs):
            if matches(d, flt):
                del self.docs[i]
                return Result(deleted_count=1)
        return Result(deleted_count=0)

    async def count_documents(self, flt: dict) -> int:
        return sum(1 for d in self.docs if matches(d, flt))


class FakeDB:
    def __init__(self):
        self._collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self._collections.setdefault(name, FakeCollection())


# ----- gateway double -----

class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self):
        self.intents: list[tuple[float, str]] = []
        self._ids = itertools.count(1)

    async def create_intent(self, amount: float, receipt: str) -> PaymentIntent:
        self.intents.append((amount, receipt))
        return PaymentIntent(id=f"order_gw_{next(self._ids)}", amount=int(round(amount * 100)),
                             currency="INR", receipt=receipt)

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return bool(signature) and signature == sign(GATEWAY_SECRET, gateway_order_id, payment_id)


def signed(gateway_order_id: str, payment_id: str) -> str:
    return sign(GATEWAY_SECRET, gateway_order_id, payment_id)


# ----- fixtures -----

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def outbox():
    return MemoryOutbox(max_attempts=3)


@pytest.fixture
def customer():
    return {"name": "Asha Rao", "email": "asha@example.com", "phone": "9876543210"}


@pytest.fixture
def shipping():
    return {"address": "12 MG Road", "city": "Pune", "state": "Maharashtra", "pincode": "411001"}


async def add_product(db, name="Chocolate Truffle", price=550.0, **extra) -> str:
    result = await db["products"].insert_one({
        "name": name, "description": "", "price": price, "image": None,
        "category": "cakes", "flavors": [], "featured": False, **extra,
    })
    return str(result.inserted_id)


async def add_coupon(db, code="SAVE10", discount_type="percentage", discount_value=10,
                     min_order_amount=None, valid_from=None, valid_until=None, is_active=True) -> str:
    now = datetime.utcnow()
    result = await db["coupons"].insert_one({
        "code": code,
        "discount_type": discount_type,
        "discount_value": discount_value,
        "min_order_amount": min_order_amount,
        "valid_from": valid_from or now - timedelta(days=1),
        "valid_until": valid_until or now + timedelta(days=30),
        "is_active": is_active,
        "created_at": now,
    })
    return str(result.inserted_id)


@pytest.fixture
def admin_token():
    user = UserOut(id=str(ObjectId()), name="Staff", phone="9000000000", email="staff@example.com", is_admin=True)
    return user, create_access_token(user)


@pytest.fixture
async def client(anyio_backend, db, gateway, outbox, admin_token):
    from database import get_db
    from gateway import get_gateway
    from main import app
    from outbox import get_outbox

    user, token = admin_token
    await db["users"].insert_one({
        "_id": ObjectId(user.id), "name": user.name, "phone": user.phone,
        "email": user.email, "password": "", "is_admin": True,
    })

    async def _db():
        return db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_outbox] = lambda: outbox
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.admin_headers = {"Authorization": f"Bearer {token}"}
        yield ac
    app.dependency_overrides.clear()
