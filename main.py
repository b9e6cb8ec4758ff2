import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auth import get_current_user, require_admin
from cart import CartStore
from checkout import CheckoutService
from config import LOG_LEVEL, PORT
from database import get_db, parse_object_id, serialize_doc
from errors import (
    ShopError,
    NotFoundError,
    ValidationFailedError,
    InsufficientStockError,
    UnauthorizedError,
    ForbiddenError,
    InvalidOrderStateError,
    OrderInProgressError,
    SignatureMismatchError,
    UpstreamFailureError,
)
from gateway import RazorpayClient, get_gateway
from ledger import increment_stock
from reconcile import audit_order, find_stalled_orders, resume
from schemas import Product, ShippingAddress, StockPick, Variant
from stock import validate_picks, validate_raw

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ping(database.db)
    except (PyMongoError, RuntimeError) as e:
        logger.critical("MongoDB connection error: %s", e)
        raise SystemExit(1)
    yield


# FastAPI app
app = FastAPI(title="E-commerce API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Map exception types to HTTP status codes
ERROR_STATUS_CODES: Dict[type, int] = {
    NotFoundError: 404,
    ValidationFailedError: 400,
    InsufficientStockError: 400,
    UnauthorizedError: 401,
    ForbiddenError: 403,
    InvalidOrderStateError: 400,
    OrderInProgressError: 409,
    SignatureMismatchError: 400,
    UpstreamFailureError: 502,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"detail": exc.message, "error_type": type(exc).__name__}
    if exc.detail is not None:
        content["items"] = exc.detail
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def get_cart_store(db: Database = Depends(get_db)) -> CartStore:
    return CartStore(db)


def get_checkout(db: Database = Depends(get_db), gateway: RazorpayClient = Depends(get_gateway)) -> CheckoutService:
    return CheckoutService(db, gateway)


# Pydantic models
class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProductUpdate(_Body):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    images: Optional[List[str]] = None


class RestockRequest(_Body):
    size: str
    color_name: str = Field(..., validation_alias=AliasChoices("color_name", "colorName"))
    quantity: int = Field(..., ge=1)


class CartAddRequest(_Body):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "productId"))
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    size: str
    color_name: str = Field(..., validation_alias=AliasChoices("color_name", "colorName"))
    quantity: int = Field(..., ge=1)


class CartItemRef(_Body):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "product", "productId"))
    size: str
    color_name: str = Field(..., validation_alias=AliasChoices("color_name", "colorName"))


class CartUpdateRequest(CartItemRef):
    new_quantity: int = Field(..., validation_alias=AliasChoices("new_quantity", "newQuantity"))


class GuestCartRequest(_Body):
    guest_cart: List[Any] = Field(..., validation_alias=AliasChoices("guest_cart", "guestCart"))


class ValidateCartRequest(_Body):
    items: List[StockPick]


class OrderCreate(_Body):
    items: List[StockPick] = Field(..., min_length=1, validation_alias=AliasChoices("items", "order_items", "orderItems"))
    shipping_address: ShippingAddress = Field(..., validation_alias=AliasChoices("shipping_address", "shippingAddress"))
    total_price: float = Field(..., ge=0, validation_alias=AliasChoices("total_price", "totalPrice"))


class VerifyRequest(_Body):
    gateway_order_id: str = Field(..., validation_alias=AliasChoices("gateway_order_id", "razorpay_order_id"))
    gateway_payment_id: str = Field(..., validation_alias=AliasChoices("gateway_payment_id", "razorpay_payment_id"))
    signature: str = Field(..., validation_alias=AliasChoices("signature", "razorpay_signature"))
    order_id: str


# Products
def _load_product(db: Database, product_id: str) -> dict:
    oid = parse_object_id(product_id)
    prod = db["product"].find_one({"_id": oid}) if oid is not None else None
    if not prod:
        raise NotFoundError("Product", {"product_id": product_id})
    return prod


@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, sort: Optional[str] = None,
                  page: int = 1, limit: int = 12, db: Database = Depends(get_db)):
    query: Dict[str, Any] = {}
    if q:
        query["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        query["category_id"] = category
    sort_spec = None
    if sort == "price_asc":
        sort_spec = [("price", 1)]
    elif sort == "price_desc":
        sort_spec = [("price", -1)]
    elif sort == "newest":
        sort_spec = [("created_at", -1)]

    skip = max(page - 1, 0) * limit
    cursor = db["product"].find(query)
    total = db["product"].count_documents(query)
    if sort_spec:
        cursor = cursor.sort(sort_spec)
    items = [serialize_doc(p) for p in cursor.skip(skip).limit(limit)]
    return {"items": items, "page": page, "limit": limit, "total": total}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return serialize_doc(_load_product(db, product_id))


@app.post("/api/products", status_code=201)
def create_product(body: Product, db: Database = Depends(get_db), current_user: dict = Depends(require_admin)):
    keys = [(v.size, v.color_name) for v in body.variants]
    if len(set(keys)) != len(keys):
        raise ValidationFailedError("Each variant must have a unique size and color")
    if db["product"].find_one({"name": body.name}):
        raise ValidationFailedError(f"A product named {body.name!r} already exists")
    doc = body.model_dump()
    doc.update({"created_at": datetime.now(timezone.utc), "updated_at": datetime.now(timezone.utc)})
    res = db["product"].insert_one(doc)
    doc["_id"] = res.inserted_id
    return serialize_doc(doc)


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, db: Database = Depends(get_db),
                   current_user: dict = Depends(require_admin)):
    prod = _load_product(db, product_id)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": prod["_id"]}, {"$set": update})
    return serialize_doc(_load_product(db, product_id))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), current_user: dict = Depends(require_admin)):
    prod = _load_product(db, product_id)
    db["product"].delete_one({"_id": prod["_id"]})
    return {"message": "Product removed"}


@app.post("/api/products/{product_id}/variants", status_code=201)
def add_variant(product_id: str, body: Variant, db: Database = Depends(get_db),
                current_user: dict = Depends(require_admin)):
    prod = _load_product(db, product_id)
    if any(v["size"] == body.size and v["color_name"] == body.color_name for v in prod.get("variants", [])):
        raise ValidationFailedError("Each variant must have a unique size and color")
    db["product"].update_one(
        {"_id": prod["_id"]},
        {"$push": {"variants": body.model_dump()}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )
    return serialize_doc(_load_product(db, product_id))


@app.post("/api/products/{product_id}/restock")
def restock_variant(product_id: str, body: RestockRequest, db: Database = Depends(get_db),
                    current_user: dict = Depends(require_admin)):
    if not increment_stock(db, product_id, body.size, body.color_name, body.quantity):
        raise NotFoundError("Variant", {"product_id": product_id, "size": body.size, "color_name": body.color_name})
    return serialize_doc(_load_product(db, product_id))


# Cart
@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user), carts: CartStore = Depends(get_cart_store)):
    return carts.validated(str(current_user["_id"]))


@app.post("/api/cart/add")
def add_to_cart(body: CartAddRequest, current_user: dict = Depends(get_current_user),
                carts: CartStore = Depends(get_cart_store)):
    items = carts.add(str(current_user["_id"]), body.product_id, body.size, body.color_name, body.quantity,
                      {"name": body.name, "price": body.price, "image": body.image})
    return {"items": items}


@app.put("/api/cart/update")
def update_cart(body: CartUpdateRequest, current_user: dict = Depends(get_current_user),
                carts: CartStore = Depends(get_cart_store)):
    items = carts.update(str(current_user["_id"]), body.product_id, body.size, body.color_name, body.new_quantity)
    return {"items": items}


@app.delete("/api/cart/remove")
def remove_from_cart(body: CartItemRef, current_user: dict = Depends(get_current_user),
                     carts: CartStore = Depends(get_cart_store)):
    items = carts.remove(str(current_user["_id"]), body.product_id, body.size, body.color_name)
    return {"items": items}


@app.delete("/api/cart/clear")
def clear_cart(current_user: dict = Depends(get_current_user), carts: CartStore = Depends(get_cart_store)):
    carts.clear(str(current_user["_id"]))
    return {"message": "Cart cleared successfully."}


@app.post("/api/cart/merge")
def merge_cart(body: GuestCartRequest, current_user: dict = Depends(get_current_user),
               carts: CartStore = Depends(get_cart_store)):
    return {"items": carts.merge(str(current_user["_id"]), body.guest_cart)}


@app.post("/api/cart/validate-guest")
def validate_guest_cart(body: GuestCartRequest, db: Database = Depends(get_db)):
    return validate_raw(db, body.guest_cart)


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreate, current_user: dict = Depends(get_current_user),
                 checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.create(current_user, body.items, body.shipping_address.model_dump(), body.total_price)
    return {"message": "Order created successfully", **result}


@app.post("/api/orders/verify")
def verify_payment(body: VerifyRequest, current_user: dict = Depends(get_current_user),
                   checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.verify(current_user, body.order_id, body.gateway_order_id, body.gateway_payment_id,
                             body.signature)
    message = "Payment already verified" if result.pop("already_verified") else "Payment verified successfully"
    return {"message": message, **result}


@app.post("/api/orders/validate-cart")
def validate_cart(body: ValidateCartRequest, db: Database = Depends(get_db)):
    report = validate_picks(db, body.items)
    return {"validated_items": [i.public() for i in report.items], "can_checkout": report.can_checkout}


@app.get("/api/orders/myorders")
def my_orders(current_user: dict = Depends(get_current_user), checkout: CheckoutService = Depends(get_checkout)):
    return {"orders": checkout.list_for_user(str(current_user["_id"]))}


@app.get("/api/orders")
def admin_orders(current_user: dict = Depends(require_admin), checkout: CheckoutService = Depends(get_checkout)):
    return {"orders": checkout.list_all()}


@app.get("/api/orders/reconcile")
def stalled_orders(current_user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"orders": find_stalled_orders(db)}


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user),
                 checkout: CheckoutService = Depends(get_checkout)):
    return checkout.get_for_user(current_user, order_id)


@app.get("/api/orders/{order_id}/audit")
def order_audit(order_id: str, current_user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return audit_order(db, order_id)


@app.put("/api/orders/{order_id}/deliver")
def deliver_order(order_id: str, current_user: dict = Depends(require_admin),
                  checkout: CheckoutService = Depends(get_checkout)):
    return checkout.mark_delivered(order_id)


@app.post("/api/orders/{order_id}/repay")
def repay_order(order_id: str, current_user: dict = Depends(get_current_user),
                checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.repay(current_user, order_id)
    return {"message": "Repayment order created", **result}


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(get_current_user),
                 checkout: CheckoutService = Depends(get_checkout)):
    return checkout.cancel(current_user, order_id)


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, current_user: dict = Depends(require_admin),
                 checkout: CheckoutService = Depends(get_checkout)):
    return checkout.delete(order_id)


@app.post("/api/orders/{order_id}/reconcile")
def reconcile_order(order_id: str, current_user: dict = Depends(require_admin),
                    checkout: CheckoutService = Depends(get_checkout)):
    return resume(checkout, order_id)


# Health + test
@app.get("/")
def root():
    return {"message": "E-commerce API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": []
    }
    try:
        if db is not None:
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
    except PyMongoError as e:
        response["error"] = str(e)[:120]
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
