from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

from admin import AdminOrders
from app_logger import get_logger
from auth import current_user, login_user, phone_is_unique, register_user, require_admin
from cart import Cart
from checkout import build_simple_order
from config import settings
from coupons import CouponEngine
from database import close_db, get_db
from errors import BakeryError, bakery_error_handler
from gateway import PaymentGateway, get_gateway
from orders import OrderStore
from outbox import OutboxEntry, PaymentOutbox, get_outbox
from payments import PaymentFlow
from products import ProductCatalog
from schemas import (
    AdminOrderUpdate,
    CartAddIn,
    CartCouponIn,
    CartOut,
    CartQuantityIn,
    CartState,
    Coupon,
    CouponOut,
    CouponUpdate,
    CouponValidateIn,
    CustomOrderCreate,
    Order,
    OrderLookupIn,
    OrderRequest,
    OrderShippingUpdate,
    PaymentConfirmIn,
    PaymentConfirmOut,
    PaymentIntentIn,
    PaymentIntentOut,
    PhoneCheckIn,
    Product,
    ProductOut,
    ProductUpdate,
    ShippingDetails,
    StoreStatus,
    Token,
    TransitionsOut,
    UserLogin,
    UserOut,
    UserRegister,
)
from store_status import ensure_store_online, get_store_status, set_store_status

log = get_logger("api")


async def get_flow(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    outbox: PaymentOutbox = Depends(get_outbox),
) -> PaymentFlow:
    return PaymentFlow(db, gateway, outbox)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Captured payments whose order write failed last time get another go
    flow = PaymentFlow(await get_db(), get_gateway(), get_outbox())
    result = await flow.replay_pending()
    if result.recovered:
        log.info("Recovered %d payment(s) on startup", len(result.recovered))
    yield
    close_db()


app = FastAPI(title="Bakery Storefront API", lifespan=lifespan)

# Allow all origins for the storefront and admin frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(BakeryError, bakery_error_handler)


class SuccessOut(BaseModel):
    success: bool = True


@app.get("/")
async def root():
    return {"message": "Bakery Storefront Backend Running"}


# ----- Auth -----

auth_router = APIRouter(prefix="/auth", tags=["Auth"])

@auth_router.post("/register", response_model=UserOut)
async def register(payload: UserRegister, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await register_user(db, payload)

@auth_router.post("/login", response_model=Token)
async def login(payload: UserLogin, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await login_user(db, payload)

@auth_router.post("/check-phone")
async def check_phone(payload: PhoneCheckIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"is_unique": await phone_is_unique(db, payload.phone)}

@auth_router.get("/me", response_model=UserOut)
async def me(user: UserOut = Depends(current_user)):
    return user


# ----- Catalog -----

product_router = APIRouter(prefix="/products", tags=["Products"])

@product_router.get("", response_model=list[ProductOut])
async def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    featured: Optional[bool] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await ProductCatalog(db).list_products(q=q, category=category, featured=featured)

@product_router.get("/{product_id}", response_model=ProductOut)
async def get_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await ProductCatalog(db).get_product(product_id)

@product_router.post("", response_model=ProductOut, status_code=201, dependencies=[Depends(require_admin)])
async def create_product(product: Product, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await ProductCatalog(db).create_product(product)

@product_router.put("/{product_id}", response_model=ProductOut, dependencies=[Depends(require_admin)])
async def update_product(product_id: str, changes: ProductUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await ProductCatalog(db).update_product(product_id, changes)

@product_router.delete("/{product_id}", response_model=SuccessOut, dependencies=[Depends(require_admin)])
async def delete_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    await ProductCatalog(db).delete_product(product_id)
    return SuccessOut()


# ----- Store status -----

@app.get("/store-status", response_model=StoreStatus, tags=["Store"])
async def read_store_status(db: AsyncIOMotorDatabase = Depends(get_db)):
    return await get_store_status(db)

@app.post("/store-status", response_model=StoreStatus, tags=["Store"], dependencies=[Depends(require_admin)])
async def toggle_store_status(payload: StoreStatus, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await set_store_status(db, payload.is_online)


# ----- Coupons -----

coupon_router = APIRouter(prefix="/coupons", tags=["Coupons"])

@coupon_router.post("/validate", response_model=CouponOut)
async def validate_coupon(payload: CouponValidateIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await CouponEngine(db).validate(payload.code.strip(), payload.amount)

@coupon_router.get("", response_model=list[CouponOut], dependencies=[Depends(require_admin)])
async def list_coupons(db: AsyncIOMotorDatabase = Depends(get_db)):
    return await CouponEngine(db).list_coupons()

@coupon_router.post("", response_model=CouponOut, status_code=201, dependencies=[Depends(require_admin)])
async def create_coupon(coupon: Coupon, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await CouponEngine(db).create_coupon(coupon)

@coupon_router.put("/{coupon_id}", response_model=CouponOut, dependencies=[Depends(require_admin)])
async def update_coupon(coupon_id: str, changes: CouponUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await CouponEngine(db).update_coupon(coupon_id, changes)

@coupon_router.delete("/{coupon_id}", response_model=SuccessOut, dependencies=[Depends(require_admin)])
async def delete_coupon(coupon_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    await CouponEngine(db).delete_coupon(coupon_id)
    return SuccessOut()


# ----- Cart (state is held by the client and sent with every call) -----

cart_router = APIRouter(prefix="/cart", tags=["Cart"])

def _cart(state: CartState) -> Cart:
    return Cart.from_state(state, minimum=settings.MIN_CHARGEABLE_AMOUNT)

@cart_router.post("/preview", response_model=CartOut)
async def preview_cart(state: CartState, db: AsyncIOMotorDatabase = Depends(get_db)):
    cart = _cart(state)
    await cart.revalidate_coupon(CouponEngine(db))
    return cart.summary()

@cart_router.post("/items", response_model=CartOut)
async def add_to_cart(payload: CartAddIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    await ensure_store_online(db)
    product = await ProductCatalog(db).get_product(payload.product_id)
    cart = _cart(payload.cart)
    cart.add_item(product, payload.quantity)
    await cart.revalidate_coupon(CouponEngine(db))
    return cart.summary()

@cart_router.put("/items/{product_id}", response_model=CartOut)
async def update_cart_quantity(product_id: str, payload: CartQuantityIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    cart = _cart(payload.cart)
    cart.update_quantity(product_id, payload.quantity)
    await cart.revalidate_coupon(CouponEngine(db))
    return cart.summary()

@cart_router.delete("/items/{product_id}", response_model=CartOut)
async def remove_from_cart(product_id: str, state: CartState, db: AsyncIOMotorDatabase = Depends(get_db)):
    cart = _cart(state)
    cart.remove_item(product_id)
    await cart.revalidate_coupon(CouponEngine(db))
    return cart.summary()

@cart_router.post("/coupon", response_model=CartOut)
async def apply_cart_coupon(payload: CartCouponIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    cart = _cart(payload.cart)
    if payload.code:
        await cart.apply_coupon(CouponEngine(db), payload.code)
    else:
        cart.remove_coupon()
    return cart.summary()


# ----- Orders -----

order_router = APIRouter(prefix="/orders", tags=["Orders"])

@order_router.post("", response_model=Order, status_code=201)
async def create_order(payload: OrderRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    if isinstance(payload, CustomOrderCreate):
        return await OrderStore(db).create_order(payload)
    data = await build_simple_order(db, payload, settings.MIN_CHARGEABLE_AMOUNT)
    return await OrderStore(db).create_order(data)

@order_router.post("/lookup", response_model=list[Order])
async def my_orders(payload: OrderLookupIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await OrderStore(db).list_orders_by_phone(payload.phone)

@order_router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await OrderStore(db).get_order(order_id)

@order_router.put("/{order_id}", response_model=Order)
async def update_shipping(order_id: str, payload: OrderShippingUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    details = ShippingDetails(**payload.model_dump(exclude={"notes"}))
    return await OrderStore(db).update_shipping_details(order_id, details, notes=payload.notes)


# ----- Payments -----

payment_router = APIRouter(prefix="/payments", tags=["Payments"])

@payment_router.post("/intent", response_model=PaymentIntentOut)
async def create_payment_intent(payload: PaymentIntentIn, flow: PaymentFlow = Depends(get_flow)):
    return await flow.create_intent(payload)

@payment_router.post("/confirm", response_model=PaymentConfirmOut)
async def confirm_payment(payload: PaymentConfirmIn, flow: PaymentFlow = Depends(get_flow)):
    return await flow.confirm(payload)

class RecoverIn(BaseModel):
    payment_id: Optional[str] = None

@payment_router.post("/recover")
async def recover_payments(payload: RecoverIn, flow: PaymentFlow = Depends(get_flow)):
    if payload.payment_id:
        return await flow.recover(payload.payment_id)
    return await flow.replay_pending()


# ----- Admin -----

admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])

@admin_router.get("/orders", response_model=list[Order])
async def admin_list_orders(
    q: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await AdminOrders(db).list_orders(q=q, status=status)

@admin_router.get("/orders/{order_id}/transitions", response_model=TransitionsOut)
async def admin_order_transitions(order_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await AdminOrders(db).transitions(order_id)

@admin_router.put("/orders/{order_id}", response_model=Order)
async def admin_update_order(order_id: str, changes: AdminOrderUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await AdminOrders(db).update_order(order_id, changes)

@admin_router.get("/payments/pending", response_model=list[OutboxEntry])
async def admin_pending_payments(outbox: PaymentOutbox = Depends(get_outbox)):
    return await outbox.all()


app.include_router(auth_router)
app.include_router(product_router)
app.include_router(coupon_router)
app.include_router(cart_router)
app.include_router(order_router)
app.include_router(payment_router)
app.include_router(admin_router)


if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
