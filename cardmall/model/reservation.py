# model/reservation.py
"""
Reservation transaction: claim N UNSOLD cards of one product for a new
PENDING order, or change nothing at all.

Concurrency:
- Postgres: candidate cards are picked with FOR UPDATE SKIP LOCKED, so two
  concurrent reservations never select overlapping rows.
- SQLite: the dialect drops the lock clause; the engine's DB gate (limit 1)
  serializes writers instead.
- Everywhere: the UNSOLD -> RESERVED update is guarded on status and its row
  count must equal the requested quantity, and orders.order_no is UNIQUE.
  Either violation rolls back and the whole unit is retried.
"""
from __future__ import annotations
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    InsufficientStock, ProductNotFound, RateLimited, TransientStoreFailure,
)
from ..helpers import now_ts, UNKNOWN_CLIENT
from ..infra.sql import GatedAsyncSession
from .db import (
    Card, Order, Product,
    CARD_UNSOLD, CARD_RESERVED, ORDER_PENDING, PRODUCT_ACTIVE,
)
from .orderno import day_prefix, next_order_number, last_order_no

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class _Contended(Exception):
    """A concurrent writer got to a selected card first."""


async def reserve_order(
    db: GatedAsyncSession,
    *,
    product_id: str,
    quantity: int,
    email: str,
    password_hash: str,
    client_ip: Optional[str] = None,
    prefix_code: str = "FAK",
    max_pending_per_ip: Optional[int] = None,
    now: Optional[float] = None,
) -> Order:
    """
    Create one PENDING order holding exactly `quantity` RESERVED cards.

    Raises ProductNotFound, InsufficientStock or RateLimited (pending cap)
    with nothing written. Repeated write conflicts end in
    TransientStoreFailure.
    """
    if quantity < 1:
        raise ValueError("quantity must be positive")

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            async with db.gated():
                async with db.session.begin():
                    order = await _reserve_once(
                        db, product_id=product_id, quantity=quantity,
                        email=email, password_hash=password_hash,
                        client_ip=client_ip, prefix_code=prefix_code,
                        max_pending_per_ip=max_pending_per_ip,
                        now=now_ts() if now is None else now,
                    )
            logger.info("reserved %d card(s) for order %s",
                        quantity, order.order_no)
            return order
        except IntegrityError:
            # order_no collision; recompute on the next attempt
            logger.warning("order number collision (attempt %d/%d)",
                           attempt, MAX_ATTEMPTS)
        except _Contended:
            logger.warning("card reservation contended (attempt %d/%d)",
                           attempt, MAX_ATTEMPTS)
    raise TransientStoreFailure("Could not reserve cards, please retry")


# UN-GATED internal function, runs inside the caller's transaction
async def _reserve_once(
    db: GatedAsyncSession,
    *,
    product_id: str,
    quantity: int,
    email: str,
    password_hash: str,
    client_ip: Optional[str],
    prefix_code: str,
    max_pending_per_ip: Optional[int],
    now: float,
) -> Order:
    s = db.session

    product = (await s.execute(
        select(Product).where(Product.id == product_id)
    )).scalar_one_or_none()
    if product is None or product.status != PRODUCT_ACTIVE:
        raise ProductNotFound()

    if (max_pending_per_ip and client_ip
            and client_ip != UNKNOWN_CLIENT):
        pending = (await s.execute(
            select(func.count(Order.id)).where(
                Order.client_ip == client_ip,
                Order.status == ORDER_PENDING,
            )
        )).scalar_one()
        if pending >= max_pending_per_ip:
            raise RateLimited(
                "Too many unpaid orders. Please pay or wait for them "
                "to expire."
            )

    card_ids = list((await s.execute(
        select(Card.id)
        .where(Card.product_id == product_id, Card.status == CARD_UNSOLD)
        .order_by(Card.created_at.asc(), Card.id.asc())
        .limit(quantity)
        .with_for_update(skip_locked=True)
    )).scalars())

    if len(card_ids) < quantity:
        raise InsufficientStock(
            f"Insufficient stock. Available: {len(card_ids)}",
            available=len(card_ids),
        )

    prefix = day_prefix(
        prefix_code, datetime.fromtimestamp(now, tz=timezone.utc)
    )
    order_no = next_order_number(prefix, await last_order_no(s, prefix))

    order = Order(
        id=uuid.uuid4().hex,
        order_no=order_no,
        product_id=product.id,
        email=email,
        password_hash=password_hash,
        quantity=quantity,
        amount=product.price * quantity,
        status=ORDER_PENDING,
        client_ip=client_ip,
        created_at=now,
    )
    s.add(order)
    await s.flush()

    res = await s.execute(
        update(Card)
        .where(Card.id.in_(card_ids), Card.status == CARD_UNSOLD)
        .values(status=CARD_RESERVED, order_id=order.id)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != quantity:
        raise _Contended()
    return order
