# model/queries.py
"""
Catalog maintenance and read paths: tags, products, card import/delete,
restock subscriptions, order lookups for customers and admins. Outside the
admin card listing, card contents only leave through `lookup_order`
(password) and `success_view` (token, checked by caller).
"""
from __future__ import annotations
import logging
import math
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, func, update
from starlette.concurrency import run_in_threadpool

from ..auth import verify_password
from ..errors import (
    CardNotFound, InvalidState, OrderNotFound, ProductNotFound, TagNotFound,
    ValidationFailed,
)
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .db import (
    Card, Order, Product, RestockSubscription, Tag,
    CARD_UNSOLD, CARD_RESERVED, CARD_SOLD, CARD_STATUSES,
    ORDER_PENDING, PRODUCT_ACTIVE, PRODUCT_INACTIVE,
    RESTOCK_PENDING,
)

logger = logging.getLogger(__name__)

# how many recent orders per email are checked against the password
MAX_ORDERS_TO_CHECK = 100


# ------------------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------------------

async def create_tag(db: GatedAsyncSession, name: str) -> Dict[str, Any]:
    tag = Tag(id=uuid.uuid4().hex, name=name.strip())
    async with db.gated():
        async with db.session.begin():
            taken = (await db.session.execute(
                select(Tag.id).where(Tag.name == tag.name)
            )).first()
            if taken is not None:
                raise InvalidState("A tag with this name already exists")
            db.session.add(tag)
    return {"id": tag.id, "name": tag.name}


async def list_tags(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    stmt = (
        select(Tag, func.count(Product.id))
        .outerjoin(Product, Product.tag_id == Tag.id)
        .group_by(Tag.id)
        .order_by(Tag.name.asc())
    )
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(stmt)).all()
    return [{"id": t.id, "name": t.name, "product_count": int(n)}
            for t, n in rows]


async def delete_tag(db: GatedAsyncSession, tag_id: str) -> None:
    """Products keep existing; they just lose the tag."""
    async with db.gated():
        async with db.session.begin():
            tag = await db.session.get(Tag, tag_id)
            if tag is None:
                raise TagNotFound()
            await db.session.execute(
                update(Product)
                .where(Product.tag_id == tag_id)
                .values(tag_id=None)
                .execution_options(synchronize_session=False)
            )
            await db.session.delete(tag)
    logger.info("deleted tag %s", tag_id)


async def create_product(
    db: GatedAsyncSession,
    *,
    name: str,
    price: int,
    max_quantity: int = 10,
    status: str = PRODUCT_ACTIVE,
    tag_id: Optional[str] = None,
) -> Dict[str, Any]:
    if status not in (PRODUCT_ACTIVE, PRODUCT_INACTIVE):
        raise ValidationFailed(f"unknown product status {status!r}")
    product = Product(
        id=uuid.uuid4().hex,
        name=name.strip(),
        price=price,
        max_quantity=max_quantity,
        status=status,
        tag_id=tag_id,
        created_at=now_ts(),
    )
    async with db.gated():
        async with db.session.begin():
            if tag_id is not None:
                if await db.session.get(Tag, tag_id) is None:
                    raise TagNotFound()
            db.session.add(product)
    return _product_dict(product, stock=0)


async def get_active_product(
    db: GatedAsyncSession, product_id: str
) -> Product:
    async with db.gated():
        async with db.session.begin():
            product = await db.session.get(Product, product_id)
    if product is None or product.status != PRODUCT_ACTIVE:
        raise ProductNotFound()
    return product


async def list_products(
    db: GatedAsyncSession, *, include_inactive: bool = False
) -> List[Dict[str, Any]]:
    # stock is derived: UNSOLD cards per product
    stock = (
        select(Card.product_id, func.count(Card.id).label("stock"))
        .where(Card.status == CARD_UNSOLD)
        .group_by(Card.product_id)
        .subquery()
    )
    stmt = (
        select(Product, func.coalesce(stock.c.stock, 0))
        .outerjoin(stock, stock.c.product_id == Product.id)
        .order_by(Product.created_at.asc())
    )
    if not include_inactive:
        stmt = stmt.where(Product.status == PRODUCT_ACTIVE)
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(stmt)).all()
    return [_product_dict(p, stock=int(n)) for p, n in rows]


def _product_dict(p: Product, stock: int) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "price": p.price,
        "max_quantity": p.max_quantity,
        "status": p.status,
        "tag_id": p.tag_id,
        "stock": stock,
    }


async def _stock_of(db: GatedAsyncSession, product_id: str) -> int:
    return (await db.session.execute(
        select(func.count(Card.id))
        .where(Card.product_id == product_id, Card.status == CARD_UNSOLD)
    )).scalar_one()


async def get_product(
    db: GatedAsyncSession, product_id: str, *, include_inactive: bool = False
) -> Dict[str, Any]:
    """One product with its tag and live stock."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Product, Tag.name)
                .outerjoin(Tag, Tag.id == Product.tag_id)
                .where(Product.id == product_id)
            )).first()
            if row is None or (not include_inactive
                               and row[0].status != PRODUCT_ACTIVE):
                raise ProductNotFound()
            product, tag_name = row
            stock = await _stock_of(db, product_id)
    out = _product_dict(product, stock=stock)
    out["tag"] = (
        {"id": product.tag_id, "name": tag_name} if product.tag_id else None
    )
    return out


_UNSET = object()


async def update_product(
    db: GatedAsyncSession,
    product_id: str,
    *,
    name: Optional[str] = None,
    price: Optional[int] = None,
    max_quantity: Optional[int] = None,
    status: Optional[str] = None,
    tag_id: Any = _UNSET,
) -> Dict[str, Any]:
    """Partial update. `tag_id=None` clears the tag; leaving it out keeps it."""
    if status is not None and status not in (PRODUCT_ACTIVE, PRODUCT_INACTIVE):
        raise ValidationFailed(f"unknown product status {status!r}")
    async with db.gated():
        async with db.session.begin():
            product = await db.session.get(Product, product_id)
            if product is None:
                raise ProductNotFound("Product not found")
            if tag_id is not _UNSET and tag_id is not None:
                if await db.session.get(Tag, tag_id) is None:
                    raise TagNotFound()
            if name is not None:
                product.name = name.strip()
            if price is not None:
                product.price = price
            if max_quantity is not None:
                product.max_quantity = max_quantity
            if status is not None:
                product.status = status
            if tag_id is not _UNSET:
                product.tag_id = tag_id
            stock = await _stock_of(db, product_id)
    logger.info("updated product %s", product_id)
    return _product_dict(product, stock=stock)


async def deactivate_product(db: GatedAsyncSession, product_id: str) -> None:
    """Soft delete: the row and its cards stay for order history."""
    async with db.gated():
        async with db.session.begin():
            result = await db.session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(status=PRODUCT_INACTIVE)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ProductNotFound("Product not found")
    logger.info("deactivated product %s", product_id)


async def import_cards(
    db: GatedAsyncSession,
    product_id: str,
    contents: List[str],
    *,
    on_restock: Optional[Callable[[str], object]] = None,
) -> int:
    """
    Add UNSOLD cards; blank and duplicate lines are skipped. Returns the
    count added. When the product had no UNSOLD card before, `on_restock`
    gets the product id after commit.
    """
    cleaned = list(dict.fromkeys(c.strip() for c in contents if c and c.strip()))
    if not cleaned:
        raise ValidationFailed("No valid card contents to import")
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            if await db.session.get(Product, product_id) is None:
                raise ProductNotFound("Product not found")
            stock_before = await _stock_of(db, product_id)
            db.session.add_all([
                Card(
                    id=uuid.uuid4().hex,
                    product_id=product_id,
                    content=content,
                    status=CARD_UNSOLD,
                    order_id=None,
                    # keeps import order as the reservation order
                    created_at=now + i * 1e-6,
                )
                for i, content in enumerate(cleaned)
            ])
    logger.info("imported %d card(s) into product %s",
                len(cleaned), product_id)

    if stock_before == 0 and on_restock is not None:
        try:
            on_restock(product_id)
        except Exception:
            # cards are committed; a lost restock mail must not change that
            logger.exception("restock hand-off failed for product %s",
                             product_id)
    return len(cleaned)


async def delete_card(db: GatedAsyncSession, card_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            card = (await db.session.execute(
                select(Card).where(Card.id == card_id).with_for_update()
            )).scalar_one_or_none()
            if card is None:
                raise CardNotFound()
            if card.status != CARD_UNSOLD:
                raise InvalidState("Only unsold cards can be deleted",
                                   status=card.status)
            await db.session.delete(card)


async def list_cards(
    db: GatedAsyncSession,
    product_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 500,
) -> Dict[str, Any]:
    """Cards of one product, newest first, plus per-status counts."""
    if status is not None and status not in CARD_STATUSES:
        raise ValidationFailed(f"unknown card status {status!r}")
    stmt = (
        select(Card, Order.order_no)
        .outerjoin(Order, Order.id == Card.order_id)
        .where(Card.product_id == product_id)
        .order_by(Card.created_at.desc(), Card.id.asc())
        .limit(max(1, min(limit, 2000)))
    )
    if status is not None:
        stmt = stmt.where(Card.status == status)
    async with db.gated():
        async with db.session.begin():
            if await db.session.get(Product, product_id) is None:
                raise ProductNotFound("Product not found")
            rows = (await db.session.execute(stmt)).all()
            counts = dict((await db.session.execute(
                select(Card.status, func.count(Card.id))
                .where(Card.product_id == product_id)
                .group_by(Card.status)
            )).all())
    return {
        "cards": [
            {
                "id": card.id,
                "content": card.content,
                "status": card.status,
                "order_no": order_no,
                "created_at": to_iso(card.created_at),
            }
            for card, order_no in rows
        ],
        "stats": {s: counts.get(s, 0) for s in CARD_STATUSES},
    }


# ------------------------------------------------------------------------------
# Restock subscriptions
# ------------------------------------------------------------------------------

async def subscribe_restock(
    db: GatedAsyncSession, product_id: str, email: str
) -> Dict[str, Any]:
    """
    Ask to be mailed when an out-of-stock product gets cards again.
    Subscribing twice re-arms the existing row.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            product = await db.session.get(Product, product_id)
            if product is None or product.status != PRODUCT_ACTIVE:
                raise ProductNotFound()
            if await _stock_of(db, product_id) > 0:
                raise ValidationFailed("Product is in stock")
            sub = (await db.session.execute(
                select(RestockSubscription)
                .where(RestockSubscription.product_id == product_id,
                       RestockSubscription.email == email)
            )).scalar_one_or_none()
            if sub is None:
                db.session.add(RestockSubscription(
                    id=uuid.uuid4().hex,
                    product_id=product_id,
                    email=email,
                    status=RESTOCK_PENDING,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                sub.status = RESTOCK_PENDING
                sub.notified_at = None
                sub.updated_at = now
    logger.info("restock subscription for product %s", product_id)
    return {"ok": True, "subscribed": True}


async def restock_subscribed(
    db: GatedAsyncSession, product_id: str, email: str
) -> bool:
    async with db.gated():
        async with db.session.begin():
            status = (await db.session.execute(
                select(RestockSubscription.status)
                .where(RestockSubscription.product_id == product_id,
                       RestockSubscription.email == email)
            )).scalar_one_or_none()
    return status == RESTOCK_PENDING


# ------------------------------------------------------------------------------
# Customer lookups
# ------------------------------------------------------------------------------

LOOKUP_FAILED = "Order not found or password incorrect"


async def lookup_order(
    db: GatedAsyncSession, order_no: str, password: str
) -> Dict[str, Any]:
    """Order by number + order password; cards only once it left PENDING."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Order, Product.name)
                .join(Product, Product.id == Order.product_id)
                .where(Order.order_no == order_no.strip())
            )).first()
            cards: List[str] = []
            if row is not None and row[0].status != ORDER_PENDING:
                cards = list((await db.session.execute(
                    select(Card.content)
                    .where(Card.order_id == row[0].id,
                           Card.status.in_((CARD_SOLD, CARD_RESERVED)))
                    .order_by(Card.created_at.asc(), Card.id.asc())
                )).scalars())

    # same answer for unknown order and wrong password
    if row is None:
        raise OrderNotFound(LOOKUP_FAILED)
    order, product_name = row
    ok = await run_in_threadpool(
        verify_password, password.strip(), order.password_hash
    )
    if not ok:
        raise OrderNotFound(LOOKUP_FAILED)

    return {
        "order_no": order.order_no,
        "product_name": product_name,
        "created_at": to_iso(order.created_at),
        "status": order.status,
        "is_pending": order.status == ORDER_PENDING,
        "cards": [{"content": c} for c in cards],
    }


async def _orders_matching(
    db: GatedAsyncSession, email: str, password: str
) -> List[tuple]:
    """(order, product name) pairs, newest first, whose hash verifies."""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Order, Product.name)
                .join(Product, Product.id == Order.product_id)
                .where(Order.email == email)
                .order_by(Order.created_at.desc())
                .limit(MAX_ORDERS_TO_CHECK)
            )).all()

    matching = []
    for order, product_name in rows:
        if await run_in_threadpool(
            verify_password, password.strip(), order.password_hash
        ):
            matching.append((order, product_name))
    if not matching:
        raise OrderNotFound(LOOKUP_FAILED)
    return matching


def _order_row(o: Order, product_name: str) -> Dict[str, Any]:
    return {
        "order_no": o.order_no,
        "created_at": to_iso(o.created_at),
        "status": o.status,
        "product_name": product_name,
        "quantity": o.quantity,
        "amount": o.amount,
    }


async def orders_by_email(
    db: GatedAsyncSession,
    email: str,
    password: str,
    *,
    page: int = 1,
    page_size: int = 20,
) -> Dict[str, Any]:
    matching = await _orders_matching(db, email, password)
    total = len(matching)
    start = (page - 1) * page_size
    return {
        "data": [_order_row(o, name)
                 for o, name in matching[start:start + page_size]],
        "meta": {
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) or 1,
        },
    }


async def lookup_orders_by_email(
    db: GatedAsyncSession, email: str, password: str
) -> Dict[str, Any]:
    """
    A single match comes back like `lookup_order`, cards included.
    Several matches come back as `{"orders": [...]}` without cards.
    """
    matching = await _orders_matching(db, email, password)
    if len(matching) > 1:
        return {"orders": [_order_row(o, name) for o, name in matching]}
    return await lookup_order(db, matching[0][0].order_no, password)


async def success_view(
    db: GatedAsyncSession, order_no: str
) -> tuple[Order, str, List[str]]:
    """(order, product name, sold card contents) for a token-holder."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Order, Product.name)
                .join(Product, Product.id == Order.product_id)
                .where(Order.order_no == order_no)
            )).first()
            if row is None:
                raise OrderNotFound()
            order, product_name = row
            cards = list((await db.session.execute(
                select(Card.content)
                .where(Card.order_id == order.id, Card.status == CARD_SOLD)
                .order_by(Card.created_at.asc(), Card.id.asc())
            )).scalars())
    return order, product_name, cards


# ------------------------------------------------------------------------------
# Admin reads
# ------------------------------------------------------------------------------

async def _order_detail(db: GatedAsyncSession, where) -> Dict[str, Any]:
    row = (await db.session.execute(
        select(Order, Product)
        .join(Product, Product.id == Order.product_id)
        .where(where)
    )).first()
    if row is None:
        raise OrderNotFound()
    order, product = row
    counts = dict((await db.session.execute(
        select(Card.status, func.count(Card.id))
        .where(Card.order_id == order.id)
        .group_by(Card.status)
    )).all())
    return {
        "id": order.id,
        "order_no": order.order_no,
        "email": order.email,
        "product": {
            "id": product.id, "name": product.name, "price": product.price,
        },
        "quantity": order.quantity,
        "amount": order.amount,
        "status": order.status,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "closed_at": to_iso(order.closed_at),
        "cards_count": sum(counts.values()),
        "reserved_cards_count": counts.get(CARD_RESERVED, 0),
        "sold_cards_count": counts.get(CARD_SOLD, 0),
    }


async def get_order_detail(
    db: GatedAsyncSession, order_id: str
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await _order_detail(db, Order.id == order_id)


async def list_orders(
    db: GatedAsyncSession, *, limit: int = 200, status: Optional[str] = None
) -> List[Dict[str, Any]]:
    stmt = (
        select(Order, Product.name)
        .join(Product, Product.id == Order.product_id)
        .order_by(Order.created_at.desc())
        .limit(max(1, min(limit, 500)))
    )
    if status:
        stmt = stmt.where(Order.status == status)
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(stmt)).all()
    return [
        {
            "id": o.id,
            "order_no": o.order_no,
            "status": o.status,
            "product_name": name,
            "quantity": o.quantity,
            "amount": o.amount,
            "email": o.email,
            "created_at": to_iso(o.created_at),
            "paid_at": to_iso(o.paid_at),
        }
        for o, name in rows
    ]


async def order_summary(
    db: GatedAsyncSession, order_no: str
) -> Dict[str, Any]:
    """Payment-facing view of an order; never includes card contents."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Order, Product.name)
                .join(Product, Product.id == Order.product_id)
                .where(Order.order_no == order_no)
            )).first()
    if row is None:
        raise OrderNotFound()
    order, product_name = row
    return {
        "order_no": order.order_no,
        "product_name": product_name,
        "quantity": order.quantity,
        "amount": order.amount,
        "status": order.status,
        "created_at": to_iso(order.created_at),
    }
