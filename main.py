import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import orders
import users
from auth import (
    Requester,
    authenticate,
    create_access_token,
    get_current_user,
    get_requester,
    register_user,
    require_admin,
)
from database import db, ensure_indexes, get_db
from errors import ShopError
from loyalty import settle_pending_credits
from schemas import (
    Address,
    AddressUpdate,
    LoginInput,
    OrderCreate,
    OrderStatus,
    PreferencesUpdate,
    ProfileUpdate,
    RegisterInput,
    StatusUpdate,
)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
API_VERSION = "1.0.0"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        settle_pending_credits(db)
    yield


app = FastAPI(title="Shopping Assistant API", version=API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Response envelope

def envelope(data: Any = None, message: Optional[str] = None, pagination: Optional[Dict[str, int]] = None):
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error, **extra}),
    )


@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return error_response(404, "Endpoint not found", message=f"Cannot {request.method} {request.url.path}")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = str(exc) if ENVIRONMENT == "development" else "Internal server error"
    return error_response(500, message)


# Health

@app.get("/health")
def health():
    database = "not available"
    try:
        if db is not None:
            db.command("ping")
            database = "connected"
    except Exception as e:
        database = f"error: {str(e)[:80]}"
    return {
        "success": True,
        "message": "Shopping API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
        "database": database,
    }


# Auth

@app.post("/auth/register", status_code=201)
def register(payload: RegisterInput, db: Database = Depends(get_db)):
    user = register_user(db, payload)
    token = create_access_token({"sub": str(user["_id"])})
    return envelope({"access_token": token, "token_type": "bearer", "user": users.serialize_user(user)})


@app.post("/auth/login")
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = authenticate(db, payload)
    token = create_access_token({"sub": str(user["_id"])})
    return envelope({"access_token": token, "token_type": "bearer", "user": users.serialize_user(user)})


# Products

@app.get("/products/search")
def search_product(
    code: str = Query(...),
    db: Database = Depends(get_db),
    lookup: catalog.ProductLookup = Depends(catalog.get_product_lookup),
    requester: Requester = Depends(get_requester),
):
    product = catalog.find_by_code(db, code, lookup)
    return envelope(catalog.serialize_product(product))


@app.get("/products/featured")
def featured_products(
    page: int = 1,
    limit: int = 20,
    db: Database = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    items, pagination = catalog.featured_products(db, page, limit)
    return envelope(items, pagination=pagination)


@app.get("/products/recommendations")
def product_recommendations(
    limit: int = 10,
    db: Database = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    return envelope(catalog.recommendations(db, limit))


@app.post("/products/sync", dependencies=[Depends(require_admin)])
def sync_products(db: Database = Depends(get_db)):
    synced = catalog.sync_products(db)
    return envelope([catalog.serialize_product(p) for p in synced], message=f"Synced {len(synced)} products")


@app.get("/products/{product_id}")
def get_product(
    product_id: str,
    db: Database = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    return envelope(catalog.serialize_product(catalog.get_product(db, product_id)))


# Orders

@app.post("/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    db: Database = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    order = orders.create_order(
        db,
        payload.items,
        payload.shipping_address,
        requester.user_id,
        merge_shipping=payload.merge_shipping,
    )
    return envelope(orders.serialize_order(db, order), message="Order created successfully")


@app.get("/orders")
def list_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[OrderStatus] = None,
    db: Database = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    items, pagination = orders.list_orders(db, str(current_user["_id"]), page, limit, status)
    return envelope(items, pagination=pagination)


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), current_user: dict = Depends(get_current_user)):
    order = orders.get_order(db, order_id, str(current_user["_id"]))
    return envelope(orders.serialize_order(db, order))


@app.put("/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db)):
    order = orders.transition_order(db, order_id, payload.status)
    return envelope(orders.serialize_order(db, order), message="Order status updated successfully")


@app.delete("/orders/{order_id}")
def cancel_order(order_id: str, db: Database = Depends(get_db), current_user: dict = Depends(get_current_user)):
    order = orders.cancel_order(db, order_id, str(current_user["_id"]))
    return envelope(orders.serialize_order(db, order), message="Order cancelled successfully")


# Users

@app.get("/users/profile")
def get_profile(current_user: dict = Depends(get_current_user)):
    return envelope(users.serialize_user(current_user))


@app.put("/users/profile")
def update_profile(data: ProfileUpdate, db: Database = Depends(get_db), current_user: dict = Depends(get_current_user)):
    user = users.update_profile(db, current_user, data)
    return envelope(users.serialize_user(user), message="Profile updated successfully")


@app.get("/users/preferences")
def get_preferences(current_user: dict = Depends(get_current_user)):
    return envelope(current_user.get("preferences", {}))


@app.put("/users/preferences")
def update_preferences(data: PreferencesUpdate, db: Database = Depends(get_db), current_user: dict = Depends(get_current_user)):
    user = users.update_preferences(db, current_user, data)
    return envelope(user["preferences"], message="Preferences updated successfully")


@app.post("/users/addresses")
def add_address(address: Address, db: Database = Depends(get_db), current_user: dict = Depends(get_current_user)):
    user = users.add_address(db, current_user, address)
    return envelope(user["addresses"], message="Address added successfully")


@app.put("/users/addresses/{index}")
def update_address(
    data: AddressUpdate,
    index: int = Path(..., ge=0),
    db: Database = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    user = users.update_address(db, current_user, index, data)
    return envelope(user["addresses"], message="Address updated successfully")


@app.delete("/users/addresses/{index}")
def delete_address(
    index: int = Path(..., ge=0),
    db: Database = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    user = users.delete_address(db, current_user, index)
    return envelope(user["addresses"], message="Address deleted successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
