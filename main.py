import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auth import decode_jwt, require_staff, resolve_tenant, STAFF_ROLES
from database import get_db, ensure_indexes
from errors import (
    OrderingError,
    ValidationError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    TenantNotFoundError,
    ConflictError,
    StatusConflictError,
    OrderNumberConflictError,
    DependencyError,
    InternalError,
    AuthenticationError,
    AuthorizationError,
)
from notifications import Notifier, OutboxNotifier, tenant_streams
from order_stats import OrderStatistics, PERIODS, parse_bound, resolve_period
from orders import OrderService
from schemas import OrderCreate, RateOrderBody, UpdateOrderStatusBody, AppendNoteBody

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error("Could not create indexes: %s", e)
    yield


app = FastAPI(title="Restaurant Chat-Bot Ordering API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------- Errors ----------------------
ERROR_STATUS_CODES: Dict[type, int] = {
    ValidationError: 400,
    InvalidTransitionError: 400,
    NotFoundError: 404,
    OrderNotFoundError: 404,
    TenantNotFoundError: 404,
    ConflictError: 409,
    StatusConflictError: 409,
    OrderNumberConflictError: 409,
    DependencyError: 503,
    InternalError: 500,
    AuthenticationError: 401,
    AuthorizationError: 403,
}


def error_response(status_code: int, exc: OrderingError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error_type": type(exc).__name__, "detail": str(exc), "fields": exc.fields},
    )


@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return error_response(status_code, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
    message = "; ".join(f"{f}: {err['msg']}" for f, err in zip(fields, exc.errors()))
    return error_response(400, ValidationError(message or "Invalid request", fields=fields))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    tenant_id = getattr(request.state, "tenant_id", None) or request.path_params.get("tenant_id")
    logger.exception("Unhandled error on %s %s (tenant %s)", request.method, request.url.path, tenant_id)
    return error_response(500, InternalError())


# ---------------------- Dependencies ----------------------
def get_notifier(db: Database = Depends(get_db)) -> Notifier:
    return OutboxNotifier(db)


def get_order_service(db: Database = Depends(get_db),
                      notifier: Notifier = Depends(get_notifier)) -> OrderService:
    return OrderService(db, notifier)


def get_statistics(db: Database = Depends(get_db)) -> OrderStatistics:
    return OrderStatistics(db)


# ---------------------- Admin: stats & real-time stream ----------------------
# Declared before /orders/{order_id} so the static paths win.
@app.get("/orders/stats/overview")
def order_stats(period: str = Query("today", pattern=f"^({'|'.join(PERIODS)})$"),
                start_date: Optional[str] = None,
                end_date: Optional[str] = None,
                user=Depends(require_staff),
                stats: OrderStatistics = Depends(get_statistics)):
    start, end = resolve_period(period, start_date, end_date)
    return {"ok": True, "stats": stats.overview(user["tenant_id"], start, end)}


@app.get("/orders/stream")
async def stream_orders(token: str):
    """Server-Sent Events stream of order events for the tenant dashboard.
    Token is provided via query for auth (SSE doesn't send headers easily).
    """
    user = decode_jwt(token)
    if user.get("role") not in STAFF_ROLES or not user.get("tenant_id"):
        raise AuthorizationError("Only restaurant staff can follow orders")
    tenant_id = user["tenant_id"]
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)
    entry = (asyncio.get_running_loop(), queue)
    tenant_streams[tenant_id].append(entry)

    async def event_gen():
        try:
            # On connect, send a ping
            yield f"data: {json.dumps({'type': 'ping', 'ts': datetime.now(timezone.utc).isoformat()})}\n\n"
            while True:
                event = await queue.get()
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except asyncio.CancelledError:
            logger.debug("Order stream closed for tenant %s", tenant_id)
        finally:
            try:
                tenant_streams[tenant_id].remove(entry)
            except ValueError:
                pass

    return StreamingResponse(event_gen(), media_type="text/event-stream")


# ---------------------- Admin: orders ----------------------
@app.get("/orders")
def list_orders(status: Optional[str] = None,
                phone: Optional[str] = None,
                date_from: Optional[str] = None,
                date_to: Optional[str] = None,
                page: int = Query(1, ge=1),
                limit: int = Query(10, ge=1, le=100),
                user=Depends(require_staff),
                service: OrderService = Depends(get_order_service)):
    result = service.list_orders(
        user["tenant_id"], status=status, phone=phone,
        date_from=parse_bound(date_from, field="date_from"),
        date_to=parse_bound(date_to, end=True, field="date_to"),
        page=page, limit=limit,
    )
    return {"ok": True, **result}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(require_staff),
              service: OrderService = Depends(get_order_service)):
    return {"ok": True, "order": service.get_order(user["tenant_id"], order_id)}


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: UpdateOrderStatusBody, user=Depends(require_staff),
                        service: OrderService = Depends(get_order_service)):
    order = service.update_status(user["tenant_id"], order_id, body.status)
    return {"ok": True, "message": "Order status updated", "status": order["status"]}


@app.patch("/orders/{order_id}/notes")
def append_order_note(order_id: str, body: AppendNoteBody, user=Depends(require_staff),
                      service: OrderService = Depends(get_order_service)):
    result = service.append_note(user["tenant_id"], order_id, body.note, author=user.get("name"))
    return {"ok": True, "message": "Note added", "notes": result["notes"]}


# ---------------------- Chat-bot (API key) ----------------------
@app.post("/orders/{tenant_id}", status_code=201)
def create_order(body: OrderCreate, tenant=Depends(resolve_tenant),
                 service: OrderService = Depends(get_order_service)):
    order = service.create_order(tenant, body)
    return {
        "ok": True,
        "message": "Order created",
        "order": {"order_number": order["order_number"], "status": order["status"], "total": order["total"]},
    }


@app.get("/orders/{tenant_id}/status/{order_number}")
def get_order_status(order_number: str, tenant=Depends(resolve_tenant),
                     service: OrderService = Depends(get_order_service)):
    return {"ok": True, "order": service.get_order_status(str(tenant["_id"]), order_number)}


@app.post("/orders/{tenant_id}/rate/{order_number}")
def rate_order(order_number: str, body: RateOrderBody, tenant=Depends(resolve_tenant),
               service: OrderService = Depends(get_order_service)):
    result = service.rate_order(str(tenant["_id"]), order_number, body.rating, body.comment)
    return {"ok": True, "message": "Thanks for rating your order", "rating": result["rating"]}


# ---------------------- Misc ----------------------
@app.get("/")
def read_root():
    return {"message": "Restaurant Chat-Bot Ordering API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": database.DATABASE_NAME or "❌ Not Set",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
