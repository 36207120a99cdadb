# model/sweep.py
from __future__ import annotations
import asyncio
import logging
from typing import AsyncContextManager, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import Order, ORDER_PENDING
from .lifecycle import close_order

logger = logging.getLogger(__name__)


async def close_expired_orders(
    db: GatedAsyncSession,
    *,
    timeout_seconds: int,
    grace_seconds: int,
    now: Optional[float] = None,
) -> Dict[str, int]:
    """
    Close every PENDING order created more than timeout + grace seconds ago.

    The grace window gives a slow payment notification the chance to land
    before the cards are released. Each order is closed in its own
    transaction; a datastore error on one is logged and left for the next
    run. Returns {"closed": n, "total": candidates}.
    """
    now = now_ts() if now is None else now
    cutoff = now - (timeout_seconds + grace_seconds)

    async with db.gated():
        async with db.session.begin():
            candidates = list((await db.session.execute(
                select(Order.id)
                .where(Order.status == ORDER_PENDING,
                       Order.created_at < cutoff)
                .order_by(Order.created_at.asc())
            )).scalars())

    closed = 0
    for order_id in candidates:
        try:
            t = await close_order(db, order_id, reason="expired")
        except SQLAlchemyError:
            logger.exception("failed to close expired order %s", order_id)
            continue
        if t.changed:
            closed += 1

    if candidates:
        logger.info("expiry sweep closed %d of %d stale order(s)",
                    closed, len(candidates))
    return {"closed": closed, "total": len(candidates)}


async def run_periodic_sweep(
    make_db: Callable[[], AsyncContextManager[GatedAsyncSession]],
    *,
    interval_seconds: int,
    timeout_seconds: int,
    grace_seconds: int,
) -> None:
    """In-process trigger; cancelled on shutdown."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with make_db() as db:
                async with timeit("sweep.close_expired"):
                    await close_expired_orders(
                        db,
                        timeout_seconds=timeout_seconds,
                        grace_seconds=grace_seconds,
                    )
        except SQLAlchemyError:
            logger.exception("periodic expiry sweep failed")
