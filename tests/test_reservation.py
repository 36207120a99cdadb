import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, func

from cardmall.errors import (
    InsufficientStock, ProductNotFound, RateLimited, TransientStoreFailure,
)
from cardmall.model import queries, reservation
from cardmall.model.db import (
    Card, Order, CARD_RESERVED, CARD_UNSOLD, ORDER_PENDING,
)
from cardmall.model.orderno import last_order_no
from cardmall.model.reservation import reserve_order

from conftest import seed_product, card_snapshot

T0 = datetime(2024, 2, 13, 12, 0, tzinfo=timezone.utc).timestamp()


def _reserve(db, product_id, quantity=1, **kw):
    kw.setdefault("email", "buyer@example.com")
    kw.setdefault("password_hash", "not-a-real-hash")
    return reserve_order(db, product_id=product_id, quantity=quantity, **kw)


async def _order_count(open_db):
    async with open_db() as db:
        async with db.session.begin():
            return (await db.session.execute(
                select(func.count(Order.id))
            )).scalar_one()


class TestReserve:
    async def test_reserves_oldest_cards(self, db, open_db):
        product = await seed_product(db, price=500, cards=5)
        order = await _reserve(db, product["id"], quantity=2, now=T0)

        assert order.status == ORDER_PENDING
        assert order.amount == 1000
        assert order.quantity == 2
        assert order.order_no == "FAK2024021300001"

        snap = await card_snapshot(open_db, product["id"])
        reserved = [cid for cid, (st, oid) in snap.items()
                    if st == CARD_RESERVED]
        assert len(reserved) == 2
        assert all(snap[cid][1] == order.id for cid in reserved)

        # import order decides which cards go first
        async with open_db() as other:
            async with other.session.begin():
                contents = set((await other.session.execute(
                    select(Card.content).where(Card.order_id == order.id)
                )).scalars())
        assert contents == {"Game Account-card-0", "Game Account-card-1"}

        listed = await queries.list_products(db)
        assert listed[0]["stock"] == 3

    async def test_sequential_order_numbers(self, db):
        product = await seed_product(db, cards=3)
        first = await _reserve(db, product["id"], now=T0)
        second = await _reserve(db, product["id"], now=T0 + 1)
        third = await _reserve(db, product["id"], now=T0 + 86400)
        assert first.order_no == "FAK2024021300001"
        assert second.order_no == "FAK2024021300002"
        assert third.order_no == "FAK2024021400001"

    async def test_custom_prefix(self, db):
        product = await seed_product(db, cards=1)
        order = await _reserve(db, product["id"], now=T0, prefix_code="XYZ")
        assert order.order_no.startswith("XYZ20240213")


class TestAtomicity:
    async def test_insufficient_stock_changes_nothing(self, db, open_db):
        product = await seed_product(db, cards=2)
        before = await card_snapshot(open_db, product["id"])

        with pytest.raises(InsufficientStock) as exc:
            await _reserve(db, product["id"], quantity=3)

        assert exc.value.details == {"available": 2}
        assert await card_snapshot(open_db, product["id"]) == before
        assert await _order_count(open_db) == 0

    async def test_inactive_product(self, db, open_db):
        product = await queries.create_product(
            db, name="Hidden", price=100, status="INACTIVE",
        )
        await queries.import_cards(db, product["id"], ["a", "b"])
        with pytest.raises(ProductNotFound):
            await _reserve(db, product["id"])
        assert await _order_count(open_db) == 0

    async def test_missing_product(self, db):
        with pytest.raises(ProductNotFound):
            await _reserve(db, "nope")


class TestNoOversell:
    async def test_concurrent_single_card_orders(self, db, open_db):
        product = await seed_product(db, cards=5)

        async def attempt(i):
            async with open_db() as own:
                return await _reserve(own, product["id"],
                                      email=f"b{i}@example.com")

        results = await asyncio.gather(
            *(attempt(i) for i in range(8)), return_exceptions=True
        )
        orders = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]

        assert len(orders) == 5
        assert len(failures) == 3
        assert all(isinstance(f, InsufficientStock) for f in failures)
        assert len({o.order_no for o in orders}) == 5

        snap = await card_snapshot(open_db, product["id"])
        owners = [oid for st, oid in snap.values()]
        assert all(st == CARD_RESERVED for st, _ in snap.values())
        assert sorted(owners) == sorted(o.id for o in orders)

    async def test_concurrent_multi_card_orders(self, db, open_db):
        product = await seed_product(db, cards=7)

        async def attempt():
            async with open_db() as own:
                return await _reserve(own, product["id"], quantity=3)

        results = await asyncio.gather(
            *(attempt() for _ in range(4)), return_exceptions=True
        )
        orders = [r for r in results if not isinstance(r, Exception)]
        assert len(orders) == 2

        snap = await card_snapshot(open_db, product["id"])
        reserved = [st for st, _ in snap.values() if st == CARD_RESERVED]
        unsold = [st for st, _ in snap.values() if st == CARD_UNSOLD]
        assert len(reserved) == 6
        assert len(unsold) == 1


class TestPendingCap:
    async def test_cap_per_client(self, db, open_db):
        product = await seed_product(db, cards=5)
        for _ in range(2):
            await _reserve(db, product["id"], client_ip="9.9.9.9",
                           max_pending_per_ip=2)

        with pytest.raises(RateLimited):
            await _reserve(db, product["id"], client_ip="9.9.9.9",
                           max_pending_per_ip=2)

        # other clients and unidentified callers are unaffected
        await _reserve(db, product["id"], client_ip="8.8.8.8",
                       max_pending_per_ip=2)
        await _reserve(db, product["id"], client_ip=None,
                       max_pending_per_ip=2)
        assert await _order_count(open_db) == 4


class TestOrderNumberCollision:
    async def test_stale_sequence_read_retries(self, db, open_db, monkeypatch):
        product = await seed_product(db, cards=5)
        first = await _reserve(db, product["id"], now=T0)
        first_id, first_no = first.id, first.order_no
        assert first_no == "FAK2024021300001"

        calls = []

        async def stale_once(session, prefix):
            calls.append(prefix)
            if len(calls) == 1:
                # as if the other writer's order were not visible yet
                return None
            return await last_order_no(session, prefix)

        monkeypatch.setattr(reservation, "last_order_no", stale_once)
        second = await _reserve(db, product["id"], now=T0 + 1)

        assert len(calls) == 2
        assert second.order_no == "FAK2024021300002"
        snap = await card_snapshot(open_db, product["id"])
        owners = sorted(oid for st, oid in snap.values()
                        if st == CARD_RESERVED)
        assert owners == sorted([first_id, second.id])
        assert sum(1 for st, oid in snap.values()
                   if st == CARD_UNSOLD and oid is None) == 3
        assert await _order_count(open_db) == 2

    async def test_persistent_collision_gives_up(self, db, open_db,
                                                 monkeypatch):
        product = await seed_product(db, cards=5)
        await _reserve(db, product["id"], now=T0)
        before = await card_snapshot(open_db, product["id"])

        async def always_stale(session, prefix):
            return None

        monkeypatch.setattr(reservation, "last_order_no", always_stale)
        with pytest.raises(TransientStoreFailure):
            await _reserve(db, product["id"], now=T0 + 1)

        assert await card_snapshot(open_db, product["id"]) == before
        assert await _order_count(open_db) == 1
