# model/lifecycle.py
"""
Order lifecycle: PENDING -> COMPLETED | CLOSED. Both targets are terminal.

Every transition is a single guarded UPDATE (``WHERE status = 'PENDING'``)
plus the matching card update, committed together. Losing a race (late
payment vs. sweep, duplicate webhook) shows up as a zero row count and is
reported as a no-op rather than an error.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidState, OrderNotFound, PaymentMismatch
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import (
    Card, Order,
    CARD_RESERVED, CARD_SOLD, CARD_UNSOLD,
    ORDER_PENDING, ORDER_COMPLETED, ORDER_CLOSED,
)

logger = logging.getLogger(__name__)

Notify = Callable[[str], object]


@dataclass(frozen=True)
class Transition:
    order_id: str
    order_no: str
    previous: str
    status: str
    changed: bool


def _refuse(order: Order, target: str, strict: bool) -> Transition:
    if strict:
        raise InvalidState(
            f"Order is {order.status}, cannot move to {target}",
            status=order.status,
        )
    logger.warning("order %s is %s; ignoring transition to %s",
                   order.order_no, order.status, target)
    return Transition(order.id, order.order_no, order.status, order.status,
                      False)


# UN-GATED: caller owns the transaction
async def _lock_order(session: AsyncSession, order_id: Optional[str],
                      order_no: Optional[str]) -> Order:
    if order_id is not None:
        where = Order.id == order_id
    elif order_no is not None:
        where = Order.order_no == order_no
    else:
        raise ValueError("order_id or order_no is required")
    order = (await session.execute(
        select(Order).where(where)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if order is None:
        raise OrderNotFound()
    return order


async def complete_order(
    db: GatedAsyncSession,
    order_no: Optional[str] = None,
    *,
    order_id: Optional[str] = None,
    amount: Optional[int] = None,
    strict: bool = False,
    notify: Optional[Notify] = None,
) -> Transition:
    """
    PENDING -> COMPLETED; reserved cards become SOLD.

    Completing an already COMPLETED order is a no-op. Completing a CLOSED
    order is refused (warning, or InvalidState when strict). `amount`, when
    given, must equal the order amount. `notify(order_id)` runs after commit
    and only when this call made the transition.
    """
    async with db.gated():
        async with db.session.begin():
            order = await _lock_order(db.session, order_id, order_no)
            if amount is not None and int(amount) != order.amount:
                raise PaymentMismatch(order_no=order.order_no)

            if order.status == ORDER_COMPLETED:
                return Transition(order.id, order.order_no, ORDER_COMPLETED,
                                  ORDER_COMPLETED, False)
            if order.status != ORDER_PENDING:
                return _refuse(order, ORDER_COMPLETED, strict)

            res = await db.session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == ORDER_PENDING)
                .values(status=ORDER_COMPLETED, paid_at=now_ts())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                logger.warning("order %s left PENDING concurrently",
                               order.order_no)
                return Transition(order.id, order.order_no, order.status,
                                  order.status, False)
            await db.session.execute(
                update(Card)
                .where(Card.order_id == order.id,
                       Card.status == CARD_RESERVED)
                .values(status=CARD_SOLD)
                .execution_options(synchronize_session=False)
            )
            done = Transition(order.id, order.order_no, ORDER_PENDING,
                              ORDER_COMPLETED, True)

    logger.info("order %s completed", done.order_no)
    if notify is not None:
        try:
            notify(done.order_id)
        except Exception:
            # the order is committed; a lost email must not change that
            logger.exception("completion hand-off failed for order %s",
                             done.order_no)
    return done


async def close_order(
    db: GatedAsyncSession,
    order_id: Optional[str] = None,
    *,
    order_no: Optional[str] = None,
    reason: str = "cancelled",
    strict: bool = False,
) -> Transition:
    """
    PENDING -> CLOSED; reserved cards go back to UNSOLD with order_id
    cleared. Closing a CLOSED order is a no-op; closing a COMPLETED order is
    refused (warning, or InvalidState when strict).
    """
    async with db.gated():
        async with db.session.begin():
            order = await _lock_order(db.session, order_id, order_no)

            if order.status == ORDER_CLOSED:
                return Transition(order.id, order.order_no, ORDER_CLOSED,
                                  ORDER_CLOSED, False)
            if order.status != ORDER_PENDING:
                return _refuse(order, ORDER_CLOSED, strict)

            res = await db.session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == ORDER_PENDING)
                .values(status=ORDER_CLOSED, closed_at=now_ts())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                logger.warning("order %s left PENDING concurrently",
                               order.order_no)
                return Transition(order.id, order.order_no, order.status,
                                  order.status, False)
            released = await db.session.execute(
                update(Card)
                .where(Card.order_id == order.id,
                       Card.status == CARD_RESERVED)
                .values(status=CARD_UNSOLD, order_id=None)
                .execution_options(synchronize_session=False)
            )
            done = Transition(order.id, order.order_no, ORDER_PENDING,
                              ORDER_CLOSED, True)

    logger.info("order %s closed (%s), %d card(s) released",
                done.order_no, reason, released.rowcount)
    return done
