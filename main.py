import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import configure_logging, load_settings
from database import close_database, ensure_indexes, get_database
from errors import (
    AccessDeniedError, InsufficientStockError, InvalidStateError, MarketplaceError, NotFoundError,
    ValidationFailedError,
)
from schemas import CartLine
from services import Services, build_services

logger = logging.getLogger(__name__)

_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        settings = load_settings()
        _services = build_services(get_database(settings), settings)
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    services = get_services()
    ensure_indexes(services.storage.db)
    if not settings.mongo_transactions:
        logger.warning("MONGO_TRANSACTIONS is off: order writes are visible before commit and are not crash-safe")
    services.start()
    logger.info("Marketplace API started (transactions=%s, reserve_stock_on_order=%s)",
                settings.mongo_transactions, settings.reserve_stock_on_order)
    try:
        yield
    finally:
        services.stop()
        close_database()


app = FastAPI(title="Marketplace API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Errors ----------------------

# Checked in order; the first kind the error belongs to wins.
ERROR_STATUS_CODES: List[tuple] = [
    (NotFoundError, 404),
    (AccessDeniedError, 403),
    (InvalidStateError, 409),
    (InsufficientStockError, 400),
    (ValidationFailedError, 400),
]


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS_CODES if isinstance(exc, kind)), 500)
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": str(exc), "error_type": type(exc).__name__, "code": exc.code},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"status": "error", "message": "Internal server error"})


# ---------------------- Utilities ----------------------

def ok(message: str, data=None):
    body = {"status": "success", "message": message}
    if data is not None:
        body["data"] = data
    return body


def require_admin(x_admin_key: Optional[str] = Header(None), services: Services = Depends(get_services)):
    if x_admin_key != services.settings.admin_key:
        raise HTTPException(401, "Unauthorized")


# ---------------------- Models ----------------------

class CreateOrderBody(BaseModel):
    shipping_address_id: str
    payment_method: str
    items: List[CartLine]


class CreateIntentBody(BaseModel):
    method: str


class PaymentCallbackBody(BaseModel):
    status: Literal["success", "failed"]
    gateway_ref: Optional[str] = None
    paid_at: Optional[datetime] = None


# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Marketplace API running"}


@app.get("/health")
def health(services: Services = Depends(get_services)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "worker": "running" if services.worker.is_alive() else "stopped",
        "queued_jobs": services.worker.pending(),
    }
    try:
        services.storage.db.command("ping")
        response["database"] = "connected"
    except Exception as e:
        logger.warning("Health check ping failed: %s", e)
    return response


# ---------------------- Orders ----------------------

@app.post("/orders", status_code=201)
def create_order(body: CreateOrderBody, user_id: str = Query(...), services: Services = Depends(get_services)):
    order = services.orders.create_order(user_id, body.shipping_address_id, body.payment_method, body.items)
    return ok("Order created successfully", order)


@app.get("/orders")
def list_orders(user_id: str = Query(...), page: int = 1, limit: int = 10,
                services: Services = Depends(get_services)):
    orders, total = services.orders.list_orders(user_id, page, limit)
    return ok("Orders retrieved", {"orders": orders, "total": total, "page": max(page, 1)})


@app.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Order retrieved", services.orders.get_order(user_id, order_id))


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Order cancelled", services.orders.cancel_order(user_id, order_id))


@app.put("/orders/{order_id}/process")
def process_order(order_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Order processed successfully", services.orders.process_order(user_id, order_id))


@app.put("/orders/{order_id}/ship")
def ship_order(order_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Order shipped successfully", services.orders.ship_order(user_id, order_id))


@app.put("/orders/{order_id}/confirm-delivery")
def confirm_delivery(order_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Order delivered", services.orders.confirm_delivered(user_id, order_id))


# ---------------------- Payments ----------------------

@app.post("/orders/{order_id}/pay", status_code=201)
def create_payment_intent(order_id: str, body: CreateIntentBody, user_id: str = Query(...),
                          services: Services = Depends(get_services)):
    intent = services.payments.create_intent(order_id, body.method, buyer_id=user_id)
    return ok("Payment intent created successfully", intent)


@app.post("/callbacks/payments/{intent_id}")
def payment_callback(intent_id: str, body: PaymentCallbackBody, services: Services = Depends(get_services)):
    intent = services.payments.handle_callback(intent_id, body.status, body.gateway_ref, body.paid_at)
    return ok("Payment callback processed", intent)


@app.put("/admin/payments/{intent_id}/simulate-success", dependencies=[Depends(require_admin)])
def simulate_payment_success(intent_id: str, services: Services = Depends(get_services)):
    return ok("Payment processed successfully", services.payments.process_success(intent_id))


@app.put("/admin/payments/{intent_id}/simulate-failed", dependencies=[Depends(require_admin)])
def simulate_payment_failed(intent_id: str, services: Services = Depends(get_services)):
    return ok("Payment failed processed", services.payments.process_failed(intent_id))


@app.post("/admin/payments/expire/{order_id}", dependencies=[Depends(require_admin)])
def expire_payment_intents(order_id: str, services: Services = Depends(get_services)):
    return ok("Pending intents expired", {"expired": services.payments.expire_by_order(order_id)})


# ---------------------- Products ----------------------

@app.put("/products/{product_id}/activate")
def activate_product(product_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Product activated", services.listings.activate_product(user_id, product_id))


@app.put("/products/{product_id}/deactivate")
def deactivate_product(product_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Product deactivated", services.listings.deactivate_product(user_id, product_id))


@app.put("/admin/products/{product_id}/suspend", dependencies=[Depends(require_admin)])
def suspend_product(product_id: str, services: Services = Depends(get_services)):
    return ok("Product suspended", services.listings.suspend_product(product_id))


@app.put("/admin/products/{product_id}/unsuspend", dependencies=[Depends(require_admin)])
def unsuspend_product(product_id: str, services: Services = Depends(get_services)):
    return ok("Product unsuspended", services.listings.unsuspend_product(product_id))


# ---------------------- Stores ----------------------

@app.put("/stores/my/activate")
def activate_store(user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Store activated", services.listings.activate_store(user_id))


@app.put("/stores/my/deactivate")
def deactivate_store(user_id: str = Query(...), services: Services = Depends(get_services)):
    return ok("Store deactivated", services.listings.deactivate_store(user_id))


@app.put("/admin/stores/{store_id}/approve", dependencies=[Depends(require_admin)])
def approve_store(store_id: str, services: Services = Depends(get_services)):
    return ok("Store approved", services.listings.approve_store(store_id))


@app.put("/admin/stores/{store_id}/reject", dependencies=[Depends(require_admin)])
def reject_store(store_id: str, services: Services = Depends(get_services)):
    return ok("Store rejected", services.listings.reject_store(store_id))


@app.put("/admin/stores/{store_id}/suspend", dependencies=[Depends(require_admin)])
def suspend_store(store_id: str, services: Services = Depends(get_services)):
    return ok("Store suspended", services.listings.suspend_store(store_id))


@app.put("/admin/stores/{store_id}/unsuspend", dependencies=[Depends(require_admin)])
def unsuspend_store(store_id: str, services: Services = Depends(get_services)):
    return ok("Store unsuspended", services.listings.unsuspend_store(store_id))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=load_settings().port)
