import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import checkout
import config
import coupons
import inventory
import orders
import payments
from database import MemoryStore, get_store
from errors import ShopError
from notifications import get_notifier, send_order_confirmation
from schemas import (
    Address,
    CartItemIn,
    CheckoutIn,
    Coupon,
    CouponCodeIn,
    CouponValidateIn,
    MethodIn,
    OrderStatusIn,
    Product,
    QuantityIn,
    Token,
    User,
    UserCreate,
    UserOut,
)

config.configure_logging()
logger = logging.getLogger("storefront")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error responses
def _error_body(status_code: int, message) -> dict:
    return {"status": "fail" if status_code < 500 else "error", "message": message}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.status_code, exc.message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"] if p != "body")
        parts.append(f"{field}: {err['msg']}" if field else err["msg"])
    message = "; ".join(parts)
    return JSONResponse(status_code=422, content=_error_body(422, message))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body(500, "Internal server error"))


# Utility functions
def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def get_current_user(token: str = Depends(oauth2_scheme), store=Depends(get_store)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = store.get_user(user_id)
    if not user:
        raise credentials_exception
    return user


# Admin guard
def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


def user_out(user: dict) -> dict:
    return {"id": user["id"], "username": user["username"], "email": user["email"], "role": user["role"]}


def public_coupon(coupon: dict) -> dict:
    return {k: v for k, v in coupon.items() if k != "user_usage"}


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API is running"}


@app.get("/health")
def health(store=Depends(get_store)):
    return {
        "backend": "running",
        "store": "memory" if isinstance(store, MemoryStore) else "mongodb",
        "payments_configured": bool(config.STRIPE_SECRET_KEY),
    }


# Auth endpoints
@app.post("/auth/register", response_model=UserOut)
def register(payload: UserCreate, store=Depends(get_store)):
    if store.find_user(username=payload.username, email=payload.email):
        raise HTTPException(status_code=400, detail="Username or email already exists")

    doc = User(
        username=payload.username,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
    ).model_dump()
    user_id = store.insert_user(doc)
    return {"id": user_id, "username": doc["username"], "email": doc["email"], "role": doc["role"]}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), store=Depends(get_store)):
    user = store.find_user(username=form_data.username)
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    access_token = create_access_token({"sub": user["id"]})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me", response_model=UserOut)
def me(user=Depends(get_current_user)):
    return user_out(user)


# Address book
@app.get("/users/me/addresses")
def list_addresses(user=Depends(get_current_user)):
    return user.get("addresses", [])


@app.post("/users/me/addresses", status_code=201)
def add_address(payload: Address, user=Depends(get_current_user), store=Depends(get_store)):
    return store.add_address(user["id"], payload.model_dump())


@app.delete("/users/me/addresses/{address_id}")
def remove_address(address_id: str, user=Depends(get_current_user), store=Depends(get_store)):
    if not store.remove_address(user["id"], address_id):
        raise HTTPException(status_code=404, detail="Address not found")
    return {"status": "removed"}


# Product endpoints
@app.post("/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: Product, store=Depends(get_store)):
    doc = payload.model_dump()
    doc["in_stock"] = inventory.derive_in_stock(doc)
    pid = store.insert_product(doc)
    return {"id": pid, **doc}


@app.get("/products")
def list_products(q: Optional[str] = None, store=Depends(get_store)):
    return store.list_products(q=q)


@app.get("/products/{product_id}")
def get_product(product_id: str, store=Depends(get_store)):
    doc = store.get_product(product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


@app.get("/products/{product_id}/stock-movements", dependencies=[Depends(require_admin)])
def list_stock_movements(product_id: str, store=Depends(get_store)):
    if not store.get_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return store.list_stock_movements(product_id)


# Coupon endpoints
@app.post("/coupons", status_code=201, dependencies=[Depends(require_admin)])
def create_coupon(payload: Coupon, store=Depends(get_store)):
    if store.get_coupon_by_code(payload.code):
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    doc = payload.model_dump()
    cid = store.insert_coupon(doc)
    return store.get_coupon(cid)


@app.get("/coupons")
def list_coupons(store=Depends(get_store)):
    return [public_coupon(c) for c in store.list_coupons(active_only=True)]


@app.get("/coupons/{code}")
def get_coupon(code: str, store=Depends(get_store)):
    coupon = store.get_coupon_by_code(code)
    if not coupon or not coupon.get("is_active"):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return public_coupon(coupon)


@app.patch("/coupons/{coupon_id}/deactivate", dependencies=[Depends(require_admin)])
def deactivate_coupon(coupon_id: str, store=Depends(get_store)):
    coupon = store.update_coupon(coupon_id, {"is_active": False})
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon


@app.post("/coupons/validate")
def validate_coupon(payload: CouponValidateIn, user=Depends(get_current_user), store=Depends(get_store)):
    coupon = coupons.get_by_code(store, payload.code)
    evaluation = coupons.evaluate(coupon, payload.total_amount, user["id"])
    coupons.raise_for(evaluation, coupon)
    return {
        "coupon": public_coupon(coupon),
        "discount": evaluation.discount,
        "final_total": round(max(payload.total_amount - evaluation.discount, 0), 2),
    }


# Cart endpoints (per-user)
@app.get("/cart")
def get_cart(user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.get_cart(store, user["id"]))


@app.post("/cart/items")
def add_to_cart(payload: CartItemIn, user=Depends(get_current_user), store=Depends(get_store)):
    cart = carts.add_item(store, user["id"], payload.product_id, payload.quantity)
    return carts.present(store, cart)


@app.patch("/cart/items/{product_id}")
def update_cart_item(product_id: str, payload: QuantityIn, user=Depends(get_current_user), store=Depends(get_store)):
    cart = carts.set_item_quantity(store, user["id"], product_id, payload.quantity)
    return carts.present(store, cart)


@app.delete("/cart/items/{product_id}")
def remove_from_cart(product_id: str, user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.remove_item(store, user["id"], product_id))


@app.delete("/cart")
def clear_cart(user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.clear(store, user["id"]))


@app.post("/cart/coupon")
def apply_coupon(payload: CouponCodeIn, user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.apply_coupon(store, user["id"], payload.code))


@app.delete("/cart/coupon")
def remove_coupon(user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.remove_coupon(store, user["id"]))


@app.put("/cart/shipping-method")
def set_shipping_method(payload: MethodIn, user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.set_shipping_method(store, user["id"], payload.method))


@app.put("/cart/payment-method")
def set_payment_method(payload: MethodIn, user=Depends(get_current_user), store=Depends(get_store)):
    return carts.present(store, carts.set_payment_method(store, user["id"], payload.method))


# Checkout / Orders
@app.post("/orders", status_code=201)
def create_order(
    payload: CheckoutIn,
    background_tasks: BackgroundTasks,
    user=Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(payments.get_gateway),
    notifier=Depends(get_notifier),
):
    result = checkout.create_order(
        store,
        gateway,
        user["id"],
        payload.address_id,
        payload.payment_method,
        payload.metadata.model_dump(),
    )
    background_tasks.add_task(send_order_confirmation, notifier, user, result.order)
    return {"order": result.order, "client_secret": result.client_secret}


@app.get("/orders")
def list_orders(user=Depends(get_current_user), store=Depends(get_store)):
    return orders.list_orders(store, user)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), store=Depends(get_store)):
    return orders.get_order(store, order_id, user)


@app.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user), store=Depends(get_store)):
    return orders.cancel_order(store, order_id, user)


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusIn, user=Depends(require_admin), store=Depends(get_store)):
    return orders.set_order_status(store, order_id, payload.status, user)


# Payment processor webhook
@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    store=Depends(get_store),
    gateway=Depends(payments.get_gateway),
):
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    update = payments.event_payment_update(event)
    if update is None:
        logger.info("Unhandled event type %s", event["type"])
        return {"received": True}

    intent_id, payment_status = update
    try:
        order = await run_in_threadpool(orders.mark_payment_status, store, intent_id, payment_status)
    except Exception:
        logger.exception("Webhook handler error for %s", event["type"])
        raise HTTPException(status_code=500, detail="Webhook handler error")
    if order is None:
        # acknowledged anyway so the processor stops retrying
        logger.warning("No order for payment intent %s (%s)", intent_id, event["type"])
    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
