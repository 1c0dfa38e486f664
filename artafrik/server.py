from __future__ import annotations
import sys
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
import structlog

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .checkout import OrderSubmission, parse_checkout
from .config import Settings, load_settings
from .currency import (
    RATE_PAIR, CurrencyConverter, normalize_source, rate_payload,
    validate_rate,
)
from .errors import ForbiddenError, NotFoundError, ShopError, ValidationError
from .gateway import PaymentAdapter, new_adapter
from .gateway.client import parse_json
from .helpers import ct_equal, now_ts, to_iso
from .infra.sql import make_database
from .logs import configure_logging
from .model.cache import new_cache
from .model.db import Base
from .model.exchangerate import ExchangeRateStore
from .model.orders import OrderStore, serialize_order
from .reconcile import PaymentHooks, Reconciler

# ----------------------------
# Config & Constants
# ----------------------------
settings = load_settings()
configure_logging(settings.log_level, settings.log_format)
log = structlog.get_logger(__name__)

if settings.database_url is None:
    log.error("database_url_missing", hint="set DATABASE_URL")
    sys.exit(1)

database = make_database(settings.database_url)


async def get_db() -> AsyncSession:
    async with database.sessions() as session:
        yield session


app = FastAPI(
    title="ArtAfrik Payments",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)


@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path,
                  error_type=type(exc).__name__, error=exc.message)
    else:
        log.warning("request_rejected", path=request.url.path,
                    status=exc.status_code, error=exc.message)
    body: Dict[str, Any] = {"success": False, "error": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    return ORJSONResponse(body, status_code=exc.status_code)


# ----------------------------
# Dependencies
# ----------------------------
def get_settings() -> Settings:
    return settings


async def order_store(db: AsyncSession = Depends(get_db)) -> OrderStore:
    return OrderStore(db=db, gated=database.gated)


async def rate_store(db: AsyncSession = Depends(get_db)) -> ExchangeRateStore:
    return ExchangeRateStore(db=db, gated=database.gated)


def payment_adapter() -> PaymentAdapter:
    adapter = getattr(app.state, "adapter", None)
    if adapter is None:
        raise RuntimeError("payment adapter not initialized")
    return adapter


def payment_hooks() -> PaymentHooks:
    return getattr(app.state, "hooks", None) or PaymentHooks()


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info(
        "startup",
        pesapal_environment=settings.pesapal_environment,
        pesapal_configured=settings.pesapal_configured,
        cache_backend=settings.cache_backend,
        ipn_url=settings.ipn_url,
    )


@app.on_event("startup")
async def _db_init():
    await database.create_all(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=settings.pesapal_timeout,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if settings.cache_backend == "redis":
        app.state.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _adapter_start():
    cache = new_cache(backend=settings.cache_backend, r=app.state.redis)
    app.state.adapter = new_adapter(
        app.state.http,
        base_url=settings.pesapal_base_url,
        consumer_key=settings.pesapal_consumer_key,
        consumer_secret=settings.pesapal_consumer_secret,
        ipn_url=settings.ipn_url,
        cache=cache,
        verify_signatures=settings.pesapal_verify_ipn,
    )
    app.state.hooks = PaymentHooks()
    if not settings.pesapal_configured:
        log.warning("pesapal_not_configured",
                    hint="checkout runs in development mode")


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await database.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise ForbiddenError("Unauthorized")


async def json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid request body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    return body


# ----------------------------
# API: Checkout
# ----------------------------
@app.post("/api/payments/pesapal")
async def create_payment(
    request: Request,
    orders: OrderStore = Depends(order_store),
    rates: ExchangeRateStore = Depends(rate_store),
    adapter: PaymentAdapter = Depends(payment_adapter),
    cfg: Settings = Depends(get_settings),
):
    # validation happens before anything is written or sent
    req = parse_checkout(await json_body(request))
    submission = OrderSubmission(
        orders=orders,
        adapter=adapter,
        converter=CurrencyConverter(rates),
        settings=cfg,
    )
    data = await submission.submit(req)
    return {"success": True, "data": data}


# ----------------------------
# API: Payment status (polled by success page)
# ----------------------------
@app.get("/api/payments/pesapal")
async def payment_status(
    orderId: Optional[str] = None,
    trackingId: Optional[str] = None,
    orders: OrderStore = Depends(order_store),
    adapter: PaymentAdapter = Depends(payment_adapter),
    hooks: PaymentHooks = Depends(payment_hooks),
):
    if not orderId:
        raise ValidationError("Order ID required", "orderId")

    check = await Reconciler(orders, adapter, hooks).poll_status(
        orderId, trackingId
    )
    order = check.order
    if not check.polled:
        return {
            "success": True,
            "data": {
                "order": serialize_order(order),
                "paymentStatus": order.payment_status,
                "isDevelopment": not adapter.configured,
            },
        }
    return {
        "success": True,
        "data": {
            "order": serialize_order(order),
            "paymentStatus": check.result.payment_status,
            "orderStatus": check.result.order_status,
            "pesapalStatus": check.gateway_status,
            "freshTransition": check.result.fresh_transition,
        },
    }


# ----------------------------
# Webhook endpoint (IPN), served on both historical paths
# ----------------------------
async def _notification_fields(request: Request) -> Dict[str, Any]:
    fields: Dict[str, Any] = dict(request.query_params)
    raw = await request.body()
    if raw:
        data = parse_json(raw.decode("utf-8", errors="replace"))
        if isinstance(data, dict):
            fields.update(data)
        else:
            log.warning("ipn_body_unparseable", body=raw[:300])
    return fields


@app.post("/api/pesapal/ipn")
@app.post("/api/payments/pesapal/ipn")
async def pesapal_ipn(
    request: Request,
    orders: OrderStore = Depends(order_store),
    adapter: PaymentAdapter = Depends(payment_adapter),
    hooks: PaymentHooks = Depends(payment_hooks),
):
    fields = await _notification_fields(request)
    headers = dict(request.headers)

    result = await Reconciler(orders, adapter, hooks).handle_notification(
        fields, headers
    )
    return {"success": True, "data": result.as_response()}


@app.get("/api/pesapal/ipn")
@app.get("/api/payments/pesapal/ipn")
async def pesapal_ipn_alive():
    return {
        "success": True,
        "message": "PesaPal IPN endpoint is active",
        "timestamp": to_iso(now_ts()),
    }


# ----------------------------
# API: Order lookup
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, orders: OrderStore = Depends(order_store)):
    order = await orders.get(order_id)
    if order is None:
        # not created yet -> let client keep polling
        raise NotFoundError("Order not found")
    return {"success": True, "data": serialize_order(order)}


# ----------------------------
# API: Exchange rate
# ----------------------------
@app.get("/api/settings/exchange-rate")
async def get_exchange_rate(rates: ExchangeRateStore = Depends(rate_store)):
    row = await rates.get_active(RATE_PAIR)
    return {"success": True, "data": rate_payload(row)}


@app.put("/api/settings/exchange-rate")
async def put_exchange_rate(
    request: Request,
    rates: ExchangeRateStore = Depends(rate_store),
):
    require_admin(request)
    body = await json_body(request)
    rate = validate_rate(body.get("rate"))
    source = normalize_source(body.get("source"))

    row = await rates.upsert_active(
        RATE_PAIR, rate=rate, source=source,
        actor=request.session.get("admin_user"),
    )
    return {
        "success": True,
        "message": "Exchange rate updated successfully",
        "data": rate_payload(row),
    }


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/orders")
async def api_admin_orders(
    request: Request,
    limit: int = 200,
    orders: OrderStore = Depends(order_store),
):
    require_admin(request)
    limit = max(1, min(limit, 500))
    rows = await orders.list_recent(limit)
    return {
        "items": [serialize_order(o, with_items=False) for o in rows],
        "limit": limit,
    }


@app.post("/admin/login")
async def admin_login(request: Request):
    body = await json_body(request)
    username = str(body.get("username") or "").strip()
    password = str(body.get("password") or "")
    ok_user = ct_equal(username, settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if not (ok_user and ok_pass):
        raise ForbiddenError("Invalid credentials.")
    request.session["admin_user"] = username
    log.info("admin_login", username=username)
    return {"success": True, "data": {"username": username}}


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)
