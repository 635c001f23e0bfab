import logging
import os
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import config
import database
import orders
import payments
import products
import users
from auth import get_current_user, get_optional_user, public_user, require_role
from database import get_db
from errors import AppError, UnauthorizedError, ValidationFailedError
from payments import get_gateway
from schemas import Category, OrderStatus, PaymentMethod, Role

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ecommerce API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_only = require_role("admin")


# -----------------------------
# Request models
# -----------------------------
class RegisterIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginIn(BaseModel):
    email: EmailStr
    password: str
    two_factor_code: Optional[str] = Field(None, min_length=6, max_length=8)


class RefreshIn(BaseModel):
    refresh_token: str


class LogoutIn(BaseModel):
    refresh_token: Optional[str] = None


class TwoFactorIn(BaseModel):
    token: str = Field(..., min_length=6, max_length=6)


class ProductImageIn(BaseModel):
    url: str = Field(..., pattern=r"^https?://\S+$")
    alt: Optional[str] = None
    is_primary: bool = False


class Dimensions(BaseModel):
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)


class ProductIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = Field(None, gt=0)
    category: Category
    subcategory: Optional[str] = Field(None, max_length=50)
    brand: Optional[str] = Field(None, max_length=50)
    sku: Optional[str] = Field(None, max_length=50)
    stock: int = Field(..., ge=0)
    images: List[ProductImageIn] = Field(..., min_length=1)
    specifications: Optional[dict[str, str]] = None
    tags: Optional[List[str]] = None
    weight: Optional[float] = Field(None, gt=0)
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = Field(None, max_length=60)
    seo_description: Optional[str] = Field(None, max_length=160)


class ProductUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, gt=0)
    category: Optional[Category] = None
    subcategory: Optional[str] = Field(None, max_length=50)
    brand: Optional[str] = Field(None, max_length=50)
    sku: Optional[str] = Field(None, max_length=50)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[ProductImageIn]] = Field(None, min_length=1)
    specifications: Optional[dict[str, str]] = None
    tags: Optional[List[str]] = None
    weight: Optional[float] = Field(None, gt=0)
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = Field(None, max_length=60)
    seo_description: Optional[str] = Field(None, max_length=160)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=500)


class OrderItemIn(BaseModel):
    product: str = Field(..., pattern=r"^[0-9a-fA-F]{24}$")
    quantity: int = Field(..., ge=1)


class ShippingAddressIn(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    address: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., min_length=4, max_length=10)
    country: str = "India"
    phone: str = Field(..., pattern=r"^\+?[\d\s\-()]+$")


class OrderIn(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = None


class CreatePaymentIn(BaseModel):
    order_id: str


class VerifyPaymentIn(BaseModel):
    order_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RefundIn(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    avatar: Optional[str] = None


class AdminUserUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_email_verified: Optional[bool] = None


# -----------------------------
# Helpers
# -----------------------------

def serialize_id(value):
    if isinstance(value, ObjectId):
        return str(value)
    return value


def serialize_document(doc):
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str."""
    if isinstance(doc, list):
        return [serialize_document(d) for d in doc]
    if not isinstance(doc, dict):
        return serialize_id(doc)
    doc = {**doc}
    if doc.get("_id") is not None:
        doc["id"] = serialize_id(doc.pop("_id"))
    return {k: serialize_document(v) for k, v in doc.items()}


def ok(data=None, message: Optional[str] = None, **extra) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_document(data)
    body.update(extra)
    return body


# -----------------------------
# Error handlers
# -----------------------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    content = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationFailedError):
        content["errors"] = exc.errors
    if isinstance(exc, UnauthorizedError) and exc.code:
        content["code"] = exc.code
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part not in ("body", "query", "path")),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation error", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# -----------------------------
# Basic routes
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Ecommerce backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -----------------------------
# Schema endpoint (for viewers/tools)
# -----------------------------
@app.get("/schema")
def get_schema():
    from schemas import User, Product, Order  # type: ignore
    return {
        "user": User.model_json_schema(),
        "product": Product.model_json_schema(),
        "order": Order.model_json_schema(),
    }


# -----------------------------
# Auth endpoints
# -----------------------------
@app.post("/api/auth/register", status_code=201)
def register(body: RegisterIn, db=Depends(get_db)):
    user, tokens = auth.register(db, body.name, body.email, body.password)
    return ok(public_user(user), "User registered successfully", tokens=tokens)


@app.post("/api/auth/login")
def login(body: LoginIn, db=Depends(get_db)):
    result = auth.login(db, body.email, body.password, body.two_factor_code)
    if result.get("requires_two_factor"):
        return ok(message="2FA code required", requires_two_factor=True)
    return ok(public_user(result["user"]), "Login successful", tokens=result["tokens"])


@app.post("/api/auth/refresh")
def refresh_token(body: RefreshIn, db=Depends(get_db)):
    tokens = auth.refresh(db, body.refresh_token)
    return ok(message="Token refreshed successfully", tokens=tokens)


@app.post("/api/auth/logout")
def logout(body: LogoutIn, user=Depends(get_current_user), db=Depends(get_db)):
    auth.logout(db, user, body.refresh_token)
    return ok(message="Logout successful")


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return ok(public_user(user))


@app.post("/api/auth/setup-2fa")
def setup_two_factor(user=Depends(get_current_user), db=Depends(get_db)):
    result = auth.setup_two_factor(db, user)
    return ok(message="2FA setup initiated", **result)


@app.post("/api/auth/verify-2fa")
def verify_two_factor(body: TwoFactorIn, user=Depends(get_current_user), db=Depends(get_db)):
    auth.enable_two_factor(db, user, body.token)
    return ok(message="2FA enabled successfully")


# -----------------------------
# Product endpoints
# -----------------------------
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort: Optional[str] = None,
    db=Depends(get_db),
):
    docs, pagination = products.list_products(
        db, page, limit, search, category, min_price, max_price, sort
    )
    return ok(docs, pagination=pagination)


@app.get("/api/products/categories")
def list_categories(db=Depends(get_db)):
    return ok(products.list_categories(db))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, user=Depends(get_optional_user), db=Depends(get_db)):
    product = products.view_product(db, product_id, user)
    return ok(products.with_derived_fields(product))


@app.post("/api/products", status_code=201)
def create_product(body: ProductIn, user=Depends(get_current_user), db=Depends(get_db)):
    product = products.create_product(db, user, body.model_dump(exclude_none=True))
    return ok(products.with_derived_fields(product), "Product created successfully")


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateIn, user=Depends(get_current_user), db=Depends(get_db)):
    product = products.update_product(db, product_id, user, body.model_dump(exclude_unset=True, exclude_none=True))
    return ok(products.with_derived_fields(product), "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    products.delete_product(db, product_id, user)
    return ok(message="Product deleted successfully")


@app.post("/api/products/{product_id}/reviews")
def add_review(product_id: str, body: ReviewIn, user=Depends(get_current_user), db=Depends(get_db)):
    product = products.add_review(db, product_id, user, body.rating, body.comment)
    return ok(products.with_derived_fields(product), "Review added successfully")


# -----------------------------
# Order endpoints
# -----------------------------
@app.post("/api/orders", status_code=201)
def create_order(body: OrderIn, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.create_order(
        db,
        user,
        [i.model_dump() for i in body.items],
        body.shipping_address.model_dump(),
        body.payment_method,
        body.notes,
    )
    return ok(order, "Order created successfully")


@app.get("/api/orders")
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    docs, pagination = orders.list_user_orders(db, user, page, limit, status)
    return ok(docs, pagination=pagination)


@app.get("/api/orders/admin/all")
def list_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    search: Optional[str] = Query(None, max_length=100),
    user=Depends(admin_only),
    db=Depends(get_db),
):
    docs, pagination = orders.list_all_orders(db, page, limit, status, search)
    return ok(docs, pagination=pagination)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return ok(orders.get_order_for_user(db, order_id, user))


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.cancel_order(db, order_id, user)
    return ok(order, "Order cancelled successfully")


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateIn, user=Depends(admin_only), db=Depends(get_db)):
    order = orders.update_status(db, order_id, body.status, body.note, body.tracking_number)
    return ok(order, "Order status updated successfully")


# -----------------------------
# Payment endpoints
# -----------------------------
@app.post("/api/payments/create-razorpay-order")
def create_razorpay_order(
    body: CreatePaymentIn,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
):
    result = payments.create_gateway_order(db, gateway, body.order_id, user)
    return ok(**result)


@app.post("/api/payments/verify-payment")
def verify_payment(body: VerifyPaymentIn, user=Depends(get_current_user), db=Depends(get_db)):
    order = payments.verify_payment(
        db,
        body.order_id,
        user,
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
    )
    return ok(order, "Payment verified successfully")


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, db=Depends(get_db)):
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature") or request.headers.get("x-signature")
    event = await run_in_threadpool(payments.handle_webhook, db, raw_body, signature)
    return ok(event=event)


@app.post("/api/payments/refund")
def refund_payment(
    body: RefundIn,
    user=Depends(admin_only),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
):
    order, refund_id = payments.refund_payment(db, gateway, body.order_id, body.amount, body.reason)
    return ok(order, "Refund processed successfully", refund_id=refund_id)


# -----------------------------
# User endpoints
# -----------------------------
@app.get("/api/users/profile")
def get_profile(user=Depends(get_current_user)):
    return ok(public_user(user))


@app.put("/api/users/profile")
def update_profile(body: ProfileUpdateIn, user=Depends(get_current_user), db=Depends(get_db)):
    updated = users.update_profile(db, user, body.name, body.avatar)
    return ok(public_user(updated), "Profile updated successfully")


@app.get("/api/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[Role] = None,
    user=Depends(admin_only),
    db=Depends(get_db),
):
    docs, pagination = users.list_users(db, page, limit, search, role)
    return ok([public_user(d) for d in docs], pagination=pagination)


@app.get("/api/users/{user_id}")
def get_user(user_id: str, user=Depends(admin_only), db=Depends(get_db)):
    return ok(public_user(users.get_user(db, user_id)))


@app.put("/api/users/{user_id}")
def admin_update_user(user_id: str, body: AdminUserUpdateIn, user=Depends(admin_only), db=Depends(get_db)):
    updated = users.admin_update_user(db, user_id, body.model_dump(exclude_unset=True))
    return ok(public_user(updated), "User updated successfully")


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, user=Depends(admin_only), db=Depends(get_db)):
    users.delete_user(db, user_id, user)
    return ok(message="User deleted successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
