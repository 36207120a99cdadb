import asyncio
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError

from cardmall.model import sweep
from cardmall.model.db import (
    CARD_RESERVED, CARD_SOLD, CARD_UNSOLD,
    ORDER_CLOSED, ORDER_COMPLETED, ORDER_PENDING,
)
from cardmall.model.lifecycle import close_order, complete_order
from cardmall.model.reservation import reserve_order
from cardmall.model.sweep import close_expired_orders, run_periodic_sweep

from conftest import seed_product, card_snapshot, load_order

T0 = datetime(2024, 2, 13, 12, 0, tzinfo=timezone.utc).timestamp()
TIMEOUT = 900
GRACE = 60


def _counts(snap):
    statuses = [st for st, _ in snap.values()]
    return {s: statuses.count(s)
            for s in (CARD_UNSOLD, CARD_RESERVED, CARD_SOLD)}


async def _reserve(db, product_id, quantity, now):
    return await reserve_order(
        db, product_id=product_id, quantity=quantity,
        email="buyer@example.com", password_hash="x", now=now,
    )


class TestCloseExpired:
    async def test_five_card_scenario(self, db, open_db):
        product = await seed_product(db, cards=5)
        order = await _reserve(db, product["id"], 3, T0)
        assert _counts(await card_snapshot(open_db, product["id"])) == {
            CARD_UNSOLD: 2, CARD_RESERVED: 3, CARD_SOLD: 0,
        }

        # inside timeout + grace nothing moves
        res = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE,
            now=T0 + TIMEOUT + GRACE - 1,
        )
        assert res == {"closed": 0, "total": 0}
        stored = await load_order(open_db, order_id=order.id)
        assert stored.status == ORDER_PENDING

        res = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE,
            now=T0 + TIMEOUT + GRACE + 1,
        )
        assert res == {"closed": 1, "total": 1}
        stored = await load_order(open_db, order_id=order.id)
        assert stored.status == ORDER_CLOSED
        snap = await card_snapshot(open_db, product["id"])
        assert all(v == (CARD_UNSOLD, None) for v in snap.values())

    async def test_completed_orders_are_left_alone(self, db, open_db):
        product = await seed_product(db, cards=5)
        paid = await _reserve(db, product["id"], 2, T0)
        stale = await _reserve(db, product["id"], 1, T0)
        fresh = await _reserve(db, product["id"], 1, T0 + TIMEOUT)
        await complete_order(db, paid.order_no)

        res = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE,
            now=T0 + TIMEOUT + GRACE + 1,
        )
        assert res == {"closed": 1, "total": 1}
        assert (await load_order(open_db, order_id=paid.id)).status \
            == ORDER_COMPLETED
        assert (await load_order(open_db, order_id=stale.id)).status \
            == ORDER_CLOSED
        assert (await load_order(open_db, order_id=fresh.id)).status \
            == ORDER_PENDING
        assert _counts(await card_snapshot(open_db, product["id"])) == {
            CARD_UNSOLD: 2, CARD_RESERVED: 1, CARD_SOLD: 2,
        }

    async def test_rerun_is_noop(self, db):
        product = await seed_product(db, cards=2)
        await _reserve(db, product["id"], 2, T0)
        later = T0 + TIMEOUT + GRACE + 10
        first = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE, now=later,
        )
        second = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE, now=later,
        )
        assert first == {"closed": 1, "total": 1}
        assert second == {"closed": 0, "total": 0}

    async def test_store_error_on_one_order_spares_the_rest(
        self, db, open_db, monkeypatch
    ):
        product = await seed_product(db, cards=4)
        failing = await _reserve(db, product["id"], 2, T0)
        healthy = await _reserve(db, product["id"], 2, T0 + 1)

        async def flaky_close(db, order_id, **kw):
            if order_id == failing.id:
                raise OperationalError("UPDATE orders", {},
                                       Exception("database is locked"))
            return await close_order(db, order_id, **kw)

        monkeypatch.setattr(sweep, "close_order", flaky_close)
        later = T0 + TIMEOUT + GRACE + 10
        res = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE, now=later,
        )
        assert res == {"closed": 1, "total": 2}
        assert (await load_order(open_db, order_id=healthy.id)).status \
            == ORDER_CLOSED
        assert (await load_order(open_db, order_id=failing.id)).status \
            == ORDER_PENDING
        assert _counts(await card_snapshot(open_db, product["id"])) == {
            CARD_UNSOLD: 2, CARD_RESERVED: 2, CARD_SOLD: 0,
        }

        # the next run picks the leftover up
        monkeypatch.setattr(sweep, "close_order", close_order)
        res = await close_expired_orders(
            db, timeout_seconds=TIMEOUT, grace_seconds=GRACE, now=later,
        )
        assert res == {"closed": 1, "total": 1}
        assert (await load_order(open_db, order_id=failing.id)).status \
            == ORDER_CLOSED
        snap = await card_snapshot(open_db, product["id"])
        assert all(v == (CARD_UNSOLD, None) for v in snap.values())


class TestPeriodicSweep:
    async def test_runs_until_cancelled(self, db, open_db):
        product = await seed_product(db, cards=1)
        order = await _reserve(db, product["id"], 1, T0)

        task = asyncio.get_running_loop().create_task(run_periodic_sweep(
            open_db, interval_seconds=0,
            timeout_seconds=TIMEOUT, grace_seconds=GRACE,
        ))
        try:
            for _ in range(200):
                stored = await load_order(open_db, order_id=order.id)
                if stored.status == ORDER_CLOSED:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        assert stored.status == ORDER_CLOSED
