from __future__ import annotations
import sys

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from . import config, tokens
from .auth import hash_password, require_admin
from .errors import (
    CardMallError, InvalidState, OrderNotFound, PaymentMismatch,
    RateLimited, ServiceUnavailable, TokenInvalid, Unauthorized,
    ValidationFailed,
)
from .helpers import (
    client_ip, ct_equal, is_valid_email, normalize_email, to_iso,
    UNKNOWN_CLIENT,
)
from .infra.sql import make_database, GatedAsyncSession
from .infra.timings import timeit, snapshot as timings_snapshot
from .mockpay import PaymentAdapter, MockPay
from .model import queries
from .model.db import Base, ORDER_COMPLETED, ORDER_PENDING
from .model.lifecycle import complete_order, close_order
from .model.ratelimit import (
    Bucket, new_governor, BACKEND as RATE_LIMIT_BACKEND,
    BUCKET_ORDER_CREATE, BUCKET_ORDER_QUERY,
)
from .model.reservation import reserve_order
from .model.sweep import close_expired_orders, run_periodic_sweep
from .notify import CompletionMailer, ResendSender, RestockMailer
from .schemas import (
    CardImport, OrderCreate, OrderLookup, OrderLookupByEmail, OrdersByEmail,
    OrderStatusUpdate, ProductCreate, ProductUpdate, RestockSubscribe,
    TagCreate,
)

if config.DATABASE_URL is None:
    sys.exit("NEED DATABASE_URL! e.g. DATABASE_URL=sqlite:///./cardmall.db")

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cardmall")

BUCKETS = {
    BUCKET_ORDER_CREATE: Bucket(config.ORDER_RATE_LIMIT_POINTS,
                                config.RATE_LIMIT_WINDOW_SECONDS),
    BUCKET_ORDER_QUERY: Bucket(config.ORDER_QUERY_RATE_LIMIT_POINTS,
                               config.RATE_LIMIT_WINDOW_SECONDS),
}

database = make_database(config.DATABASE_URL)


@asynccontextmanager
async def open_db():
    async with database.open() as db:
        yield db


async def get_db() -> GatedAsyncSession:
    async with open_db() as db:
        yield db

adapter: PaymentAdapter = MockPay()

app = FastAPI(
    title="CardMall",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)

if RATE_LIMIT_BACKEND != "redis":
    app.state.governor = new_governor(BUCKETS)


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(CardMallError)
async def _cardmall_error(request: Request, exc: CardMallError):
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    err = ValidationFailed(errors=[
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
        for e in exc.errors()
    ])
    return ORJSONResponse(err.to_dict(), status_code=err.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("CardMall is starting up...")
    logger.info("   - Rate limit backend: %s", RATE_LIMIT_BACKEND)
    logger.info("   - Pending timeout: %ss (+%ss grace)",
                config.PENDING_ORDER_TIMEOUT_SECONDS,
                config.PENDING_ORDER_GRACE_SECONDS)
    if tokens.get_secret() is None:
        logger.warning("no success-token secret configured; buyers will "
                       "need their order password to see cards")


@app.on_event("startup")
async def _db_init():
    await database.create_all(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if RATE_LIMIT_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        app.state.governor = new_governor(BUCKETS, r=app.state.redis)


@app.on_event("startup")
async def _mailer_start():
    sender = ResendSender(app.state.http, config.RESEND_API_KEY,
                          config.EMAIL_FROM)
    app.state.mailer = CompletionMailer(
        open_db, sender, brand=config.SITE_NAME, site_url=config.SITE_URL,
    )
    app.state.mailer.start()
    app.state.restock_mailer = RestockMailer(
        open_db, sender, brand=config.SITE_NAME, site_url=config.SITE_URL,
    )
    app.state.restock_mailer.start()


@app.on_event("startup")
async def _sweeper_start():
    if config.SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.get_running_loop().create_task(
            run_periodic_sweep(
                open_db,
                interval_seconds=config.SWEEP_INTERVAL_SECONDS,
                timeout_seconds=config.PENDING_ORDER_TIMEOUT_SECONDS,
                grace_seconds=config.PENDING_ORDER_GRACE_SECONDS,
            )
        )


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _mailer_stop():
    mailer = getattr(app.state, "mailer", None)
    if mailer is not None:
        await mailer.stop()
        app.state.mailer = None
    restock_mailer = getattr(app.state, "restock_mailer", None)
    if restock_mailer is not None:
        await restock_mailer.stop()
        app.state.restock_mailer = None


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
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await database.dispose()


# ----------------------------
# Helpers
# ----------------------------
def rate_limited(bucket: str):
    async def _gate(request: Request) -> None:
        governor = request.app.state.governor
        if not await governor.consume(bucket, client_ip(request)):
            logger.info("rate limited %s for %s", bucket, client_ip(request))
            raise RateLimited()
    return _gate


def completion_notifier(app: FastAPI) -> Optional[Callable[[str], object]]:
    mailer = getattr(app.state, "mailer", None)
    return mailer.submit if mailer is not None else None


def restock_notifier(app: FastAPI) -> Optional[Callable[[str], object]]:
    mailer = getattr(app.state, "restock_mailer", None)
    return mailer.submit if mailer is not None else None


# ----------------------------
# Storefront API
# ----------------------------
@app.get("/api/products")
async def api_products(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await queries.list_products(db)}


@app.get("/api/products/{product_id}")
async def api_product(
    product_id: str, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.get_product(db, product_id)


@app.get("/api/tags")
async def api_tags(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await queries.list_tags(db)}


@app.post("/api/restock-subscriptions",
          dependencies=[Depends(rate_limited(BUCKET_ORDER_QUERY))])
async def api_restock_subscribe(
    payload: RestockSubscribe, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.subscribe_restock(db, payload.product_id,
                                           payload.email)


@app.get("/api/restock-subscriptions")
async def api_restock_subscribed(
    product_id: str, email: str, db: GatedAsyncSession = Depends(get_db),
):
    if not is_valid_email(email):
        raise ValidationFailed("Invalid email address")
    subscribed = await queries.restock_subscribed(
        db, product_id, normalize_email(email)
    )
    return {"subscribed": subscribed}


@app.post("/api/orders",
          dependencies=[Depends(rate_limited(BUCKET_ORDER_CREATE))])
async def create_order(
    payload: OrderCreate,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    product = await queries.get_active_product(db, payload.product_id)
    if payload.quantity > product.max_quantity:
        raise ValidationFailed(
            f"Quantity must be between 1 and {product.max_quantity}"
        )

    password_hash = await run_in_threadpool(
        hash_password, payload.order_password
    )
    ip = client_ip(request)
    async with timeit("reservation.reserve"):
        order = await reserve_order(
            db,
            product_id=product.id,
            quantity=payload.quantity,
            email=payload.email,
            password_hash=password_hash,
            client_ip=None if ip == UNKNOWN_CLIENT else ip,
            prefix_code=config.ORDER_NO_PREFIX,
            max_pending_per_ip=config.MAX_PENDING_ORDERS_PER_IP,
        )

    payment_url = adapter.payment_url(order.order_no, order.amount,
                                      product.name)
    return {
        "order_no": order.order_no,
        "amount": order.amount,
        "payment_url": payment_url,
        "payment_reference_ready": payment_url is not None,
        # None without a signing secret; the buyer then uses the lookup
        "success_token": tokens.mint(order.order_no),
    }


@app.post("/api/orders/lookup",
          dependencies=[Depends(rate_limited(BUCKET_ORDER_QUERY))])
async def lookup_order(
    payload: OrderLookup,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.lookup_order(db, payload.order_no, payload.password)


@app.post("/api/orders/by-email",
          dependencies=[Depends(rate_limited(BUCKET_ORDER_QUERY))])
async def orders_by_email(
    payload: OrdersByEmail,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.orders_by_email(
        db, payload.email, payload.password,
        page=payload.page, page_size=payload.page_size,
    )


@app.post("/api/orders/lookup-by-email",
          dependencies=[Depends(rate_limited(BUCKET_ORDER_QUERY))])
async def lookup_orders_by_email(
    payload: OrderLookupByEmail,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.lookup_orders_by_email(db, payload.email,
                                                payload.password)


@app.get("/api/orders/{order_no}/success")
async def order_success(
    order_no: str,
    token: str = "",
    db: GatedAsyncSession = Depends(get_db),
):
    if not tokens.verify(order_no, token):
        raise TokenInvalid()
    order, product_name, cards = await queries.success_view(db, order_no)
    if order.status != ORDER_COMPLETED:
        raise InvalidState("Order is not completed", status=order.status)
    return {
        "order_no": order.order_no,
        "product_name": product_name,
        "email": order.email,
        "quantity": order.quantity,
        "amount": order.amount,
        "paid_at": to_iso(order.paid_at),
        "cards": [{"content": c} for c in cards],
    }


# ----------------------------
# Payment events (webhook + MockPay)
# ----------------------------
async def handle_payment_event(event: dict, db: GatedAsyncSession) -> dict:
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    order_no, amount, idem = adapter.event_ids(event)
    if not order_no:
        raise HTTPException(400, detail="missing order_no")
    logger.info("payment event %s for order %s (%s)", kind, order_no, idem)

    try:
        if kind == "succeeded":
            async with timeit("lifecycle.complete"):
                t = await complete_order(
                    db, order_no, amount=amount,
                    notify=completion_notifier(app),
                )
        elif kind == "canceled":
            async with timeit("lifecycle.close"):
                t = await close_order(db, order_no=order_no,
                                      reason="payment canceled")
        else:
            # failed attempts leave the order payable until it expires
            return {"ok": True, "order_status": ORDER_PENDING}
    except OrderNotFound:
        raise HTTPException(404, detail="order not found")
    except PaymentMismatch:
        logger.warning("amount mismatch for order %s: got %s",
                       order_no, amount)
        raise HTTPException(400, detail="amount mismatch")

    return {"ok": True, "order_status": t.status, "idempotent": not t.changed}


@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    payload = await request.body()
    headers = dict(request.headers)
    event = adapter.verify_webhook(payload, headers)
    return await handle_payment_event(event, db)


@app.get("/mockpay/{order_no}")
async def mockpay_screen(
    order_no: str,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.order_summary(db, order_no)


@app.post("/mockpay/{order_no}/emit")
async def mockpay_emit(
    order_no: str,
    t: str = Form(...),
    db: GatedAsyncSession = Depends(get_db),
):
    if t not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    summary = await queries.order_summary(db, order_no)

    # same path a real provider takes: signed body, verified, then handled
    payload = adapter.build_event(t, order_no, summary["amount"])
    event = adapter.verify_webhook(
        payload, {MockPay.SIGNATURE_HEADER: adapter.sign(payload)}
    )
    result = await handle_payment_event(event, db)
    if t == "succeeded":
        result["success_token"] = tokens.mint(order_no)
    return result


# ----------------------------
# Expiry sweep trigger
# ----------------------------
@app.get("/api/cron/close-expired-orders")
async def cron_close_expired_orders(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    if not config.CRON_SECRET:
        raise ServiceUnavailable("CRON_SECRET is not configured")
    auth = request.headers.get("authorization") or ""
    if not ct_equal(auth, f"Bearer {config.CRON_SECRET}"):
        raise Unauthorized()
    async with timeit("sweep.close_expired"):
        return await close_expired_orders(
            db,
            timeout_seconds=config.PENDING_ORDER_TIMEOUT_SECONDS,
            grace_seconds=config.PENDING_ORDER_GRACE_SECONDS,
        )


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
    ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True, "user": username.strip()}
    logger.warning("failed admin login for %r from %s",
                   username.strip(), client_ip(request))
    raise Unauthorized("Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


admin = [Depends(require_admin)]


@app.post("/api/admin/tags", dependencies=admin)
async def api_admin_create_tag(
    payload: TagCreate, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.create_tag(db, payload.name)


@app.get("/api/admin/tags", dependencies=admin)
async def api_admin_tags(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await queries.list_tags(db)}


@app.delete("/api/admin/tags/{tag_id}", dependencies=admin)
async def api_admin_delete_tag(
    tag_id: str, db: GatedAsyncSession = Depends(get_db),
):
    await queries.delete_tag(db, tag_id)
    return {"message": "Tag deleted"}


@app.get("/api/admin/products", dependencies=admin)
async def api_admin_products(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await queries.list_products(db, include_inactive=True)}


@app.post("/api/admin/products", dependencies=admin)
async def api_admin_create_product(
    payload: ProductCreate, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.create_product(
        db,
        name=payload.name,
        price=payload.price,
        max_quantity=payload.max_quantity,
        status=payload.status,
        tag_id=payload.tag_id,
    )


@app.get("/api/admin/products/{product_id}", dependencies=admin)
async def api_admin_product(
    product_id: str, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.get_product(db, product_id, include_inactive=True)


@app.put("/api/admin/products/{product_id}", dependencies=admin)
async def api_admin_update_product(
    product_id: str,
    payload: ProductUpdate,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.update_product(
        db, product_id, **payload.model_dump(exclude_unset=True)
    )


@app.delete("/api/admin/products/{product_id}", dependencies=admin)
async def api_admin_deactivate_product(
    product_id: str, db: GatedAsyncSession = Depends(get_db),
):
    # soft delete: cards and order history keep pointing at it
    await queries.deactivate_product(db, product_id)
    return {"message": "Product deactivated"}


@app.get("/api/admin/products/{product_id}/cards", dependencies=admin)
async def api_admin_cards(
    product_id: str,
    status: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    return await queries.list_cards(db, product_id, status=status)


@app.post("/api/admin/products/{product_id}/cards", dependencies=admin)
async def api_admin_import_cards(
    product_id: str,
    payload: CardImport,
    db: GatedAsyncSession = Depends(get_db),
):
    added = await queries.import_cards(
        db, product_id, payload.contents, on_restock=restock_notifier(app),
    )
    return {"added": added}


@app.delete("/api/admin/cards/{card_id}", dependencies=admin)
async def api_admin_delete_card(
    card_id: str, db: GatedAsyncSession = Depends(get_db),
):
    await queries.delete_card(db, card_id)
    return {"message": "Card deleted"}


@app.get("/api/admin/orders", dependencies=admin)
async def api_admin_orders(
    limit: int = 200,
    status: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    items = await queries.list_orders(db, limit=limit, status=status)
    return {"items": items, "limit": limit}


@app.get("/api/admin/orders/{order_id}", dependencies=admin)
async def api_admin_order(
    order_id: str, db: GatedAsyncSession = Depends(get_db),
):
    return await queries.get_order_detail(db, order_id)


@app.patch("/api/admin/orders/{order_id}", dependencies=admin)
async def api_admin_update_order(
    order_id: str,
    payload: OrderStatusUpdate,
    db: GatedAsyncSession = Depends(get_db),
):
    if payload.status == ORDER_COMPLETED:
        await complete_order(db, order_id=order_id, strict=True,
                             notify=completion_notifier(app))
    elif payload.status == ORDER_PENDING:
        detail = await queries.get_order_detail(db, order_id)
        if detail["status"] != ORDER_PENDING:
            raise InvalidState(
                f"Order is {detail['status']}, cannot move to PENDING",
                status=detail["status"],
            )
        return detail
    else:
        reason = f"admin: {payload.note}" if payload.note else "admin"
        await close_order(db, order_id, reason=reason, strict=True)
    return await queries.get_order_detail(db, order_id)


@app.delete("/api/admin/orders/{order_id}", dependencies=admin)
async def api_admin_delete_order(
    order_id: str, db: GatedAsyncSession = Depends(get_db),
):
    # soft delete: the order is closed, never removed
    await close_order(db, order_id, reason="admin delete", strict=True)
    return await queries.get_order_detail(db, order_id)


@app.get("/api/admin/timings", dependencies=admin)
async def api_admin_timings():
    return {"items": timings_snapshot()}
