"""
Order numbers: ``<CODE><YYYYMMDD><sequence>``, e.g. ``FAK2024021300010``.

The sequence restarts at 00001 every UTC day and is derived from the last
order number carrying the same day prefix. The lookup runs inside the
reservation transaction; the UNIQUE constraint on ``orders.order_no`` catches
whatever the isolation level lets through.
"""
from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order

SEQ_WIDTH = 5

_CODE_RE = re.compile(r"^[A-Z]{3}$")


def day_prefix(code: str = "FAK", now: Optional[datetime] = None) -> str:
    if not _CODE_RE.match(code):
        raise ValueError(f"order number code must be 3 letters: {code!r}")
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{code}{now:%Y%m%d}"


def next_order_number(prefix: str, last_order_no: Optional[str]) -> str:
    if not last_order_no:
        seq = 1
    else:
        if not last_order_no.startswith(prefix):
            raise ValueError(
                f"{last_order_no!r} does not carry prefix {prefix!r}"
            )
        suffix = last_order_no[len(prefix):]
        if not suffix.isdigit():
            raise ValueError(f"non-numeric sequence in {last_order_no!r}")
        seq = int(suffix) + 1
    # past 99999 the sequence widens instead of wrapping
    return f"{prefix}{seq:0{SEQ_WIDTH}d}"


# UN-GATED: caller owns the transaction
async def last_order_no(session: AsyncSession, prefix: str) -> Optional[str]:
    # length first so widened sequences still sort after 99999
    stmt = (
        select(Order.order_no)
        .where(Order.order_no.startswith(prefix, autoescape=True))
        .order_by(func.length(Order.order_no).desc(), Order.order_no.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()
