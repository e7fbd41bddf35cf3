import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from database import get_db, ensure_indexes, serialize_doc
from errors import APIError, Conflict, NotFound, PointsAccrualFailure, StoreFailure, Unauthorized
from schemas import Address, OrderItem, OrderStatus, Product, ShippingInfo, User
from security import (
    ADMIN_EMAILS,
    Token,
    create_access_token,
    get_current_admin,
    get_current_user,
    get_password_hash,
    get_user_by_email,
    verify_password,
)
import catalog
import orders
import payments
import wishlist

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as exc:
            logger.warning("Unable to ensure indexes: %s", exc)
    yield


app = FastAPI(title="FashionHub Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    failure = StoreFailure("Database error", str(exc))
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"message": "Validation failed", "error": jsonable_encoder(exc.errors())},
    )


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class ProductUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    images: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    in_stock: Optional[bool] = Field(None, alias="inStock")


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderItem] = Field(..., min_length=1)
    amount: Optional[float] = Field(None, ge=0)
    shipping_info: ShippingInfo = Field(..., alias="shippingInfo")
    payment_intent: Optional[str] = Field(None, alias="paymentIntent")


class StatusUpdate(BaseModel):
    status: OrderStatus


@app.get("/")
def read_root():
    return {"name": "FashionHub Store API", "status": "ok"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    info = {"backend": "running", "database": "disconnected"}
    try:
        info["collections"] = db.list_collection_names()[:10]
        info["database"] = "connected"
    except PyMongoError as e:
        info["error"] = str(e)
    return info


# Accounts
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, db=Depends(get_db)):
    if get_user_by_email(db, req.email):
        raise Conflict("Email already registered")
    now = datetime.utcnow()
    user_doc = User(
        name=req.name,
        email=req.email,
        password_hash=get_password_hash(req.password),
        is_admin=req.email.lower() in ADMIN_EMAILS,
        created_at=now,
        updated_at=now,
    ).model_dump()
    try:
        inserted_id = db["user"].insert_one(user_doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("Registered user %s", inserted_id)
    return {"_id": str(inserted_id), "name": req.name, "email": req.email}


@app.post("/auth/token", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = get_user_by_email(db, form_data.username)
    if not user or not verify_password(form_data.password, user["password_hash"]):
        raise Unauthorized("Incorrect username or password")
    access_token = create_access_token(data={"sub": str(user["_id"]), "is_admin": bool(user.get("is_admin"))})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/me")
def me(current=Depends(get_current_user), db=Depends(get_db)):
    user = db["user"].find_one({"_id": catalog.to_object_id(current["_id"], "User")}, {"password_hash": 0})
    if not user:
        raise NotFound("User not found")
    return serialize_doc(user)


@app.post("/me/addresses")
def add_address(address: Address, current=Depends(get_current_user), db=Depends(get_db)):
    oid = catalog.to_object_id(current["_id"], "User")
    db["user"].update_one({"_id": oid}, {"$push": {"addresses": address.model_dump()}})
    return {"addresses": db["user"].find_one({"_id": oid}, {"addresses": 1}).get("addresses", [])}


# Catalog
@app.get("/products")
def list_products(
    keyword: Optional[str] = None,
    category: Optional[str] = None,
    color: Optional[str] = None,
    size: Optional[str] = None,
    db=Depends(get_db),
):
    filt = catalog.build_product_filter(keyword, category, color, size)
    return [serialize_doc(p) for p in db["product"].find(filt).sort("created_at", -1)]


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return serialize_doc(catalog.get_product_or_404(db, product_id))


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, review: ReviewIn, current=Depends(get_current_user), db=Depends(get_db)):
    doc = catalog.add_review(db, product_id, current["_id"], review.rating, review.comment)
    return serialize_doc(doc)


@app.post("/admin/products", status_code=201)
def create_product(product: Product, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    data = product.model_dump(exclude={"reviews", "created_at", "updated_at"})
    data["reviews"] = []
    product_id = database.create_document("product", data, database=db)
    return serialize_doc(catalog.get_product_or_404(db, product_id))


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    updates = payload.model_dump(exclude_none=True)
    oid = catalog.to_object_id(product_id)
    if updates:
        updates["updated_at"] = datetime.utcnow()
        res = db["product"].update_one({"_id": oid}, {"$set": updates})
        if res.matched_count == 0:
            raise NotFound("Product not found")
    return serialize_doc(catalog.get_product_or_404(db, product_id))


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    res = db["product"].delete_one({"_id": catalog.to_object_id(product_id)})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    return {"message": "Product removed"}


# Orders
def _order_failed(exc: APIError) -> APIError:
    detail = f"{exc.message}: {exc.error}" if exc.error else exc.message
    return type(exc)("Order failed", detail)


@app.post("/orders", status_code=201)
def create_order(
    payload: PlaceOrderRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None),
    current=Depends(get_current_user),
    db=Depends(get_db),
):
    try:
        order, created = orders.place_order(
            db,
            current["_id"],
            payload.items,
            payload.shipping_info,
            payment_intent=payload.payment_intent,
            amount=payload.amount,
            idempotency_key=idempotency_key,
        )
    except PointsAccrualFailure:
        raise
    except APIError as exc:
        raise _order_failed(exc)
    if not created:
        response.status_code = 200
    return serialize_doc(order)


@app.get("/orders")
def my_orders(current=Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(o) for o in orders.list_orders(db, user_id=current["_id"])]


@app.get("/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(orders.get_order(db, order_id, current))


@app.get("/admin/orders")
def all_orders(status: Optional[OrderStatus] = None, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    docs = orders.list_orders(db, status=status.value if status else None)
    return [serialize_doc(o) for o in docs]


@app.patch("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    return serialize_doc(orders.change_status(db, order_id, payload.status))


@app.post("/admin/orders/reconcile-points")
def reconcile_points(_: dict = Depends(get_current_admin), db=Depends(get_db)):
    return {"reconciled": orders.reconcile_pending_points(db)}


@app.get("/admin/users/{user_id}/points")
def user_points(user_id: str, _: dict = Depends(get_current_admin), db=Depends(get_db)):
    user = db["user"].find_one({"_id": catalog.to_object_id(user_id, "User")}, {"points": 1})
    if not user:
        raise NotFound("User not found")
    return {"balance": user.get("points", 0), "derived": orders.derive_points(db, user_id)}


# Wishlist
@app.get("/wishlist")
def get_wishlist(current=Depends(get_current_user), db=Depends(get_db)):
    return {"wishlist": wishlist.get_wishlist(db, current["_id"])}


@app.post("/wishlist/{product_id}")
def add_to_wishlist(product_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    return {"wishlist": wishlist.add_to_wishlist(db, current["_id"], product_id)}


@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    return {"wishlist": wishlist.remove_from_wishlist(db, current["_id"], product_id)}


# Payments
@app.post("/payment/create-checkout-session")
def create_checkout_session(payload: payments.CheckoutSessionRequest, origin: Optional[str] = Header(None)):
    session_id = payments.create_checkout_session(payload.cart_items, origin)
    return {"id": session_id}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
