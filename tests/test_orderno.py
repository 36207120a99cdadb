import uuid
from datetime import datetime, timezone, timedelta

import pytest

from cardmall.model.db import Order
from cardmall.model.orderno import (
    day_prefix, next_order_number, last_order_no,
)

from conftest import seed_product


class TestDayPrefix:
    def test_utc_date(self):
        now = datetime(2024, 2, 13, 12, 0, tzinfo=timezone.utc)
        assert day_prefix("FAK", now) == "FAK20240213"

    def test_converts_to_utc(self):
        # 01:00 at +02:00 is still the previous day in UTC
        now = datetime(2024, 2, 14, 1, 0,
                       tzinfo=timezone(timedelta(hours=2)))
        assert day_prefix("FAK", now) == "FAK20240213"

    @pytest.mark.parametrize("code", ["FA", "FAKE", "fak", "F4K", ""])
    def test_rejects_bad_code(self, code):
        with pytest.raises(ValueError):
            day_prefix(code)


class TestNextOrderNumber:
    def test_first_of_day(self):
        assert next_order_number("FAK20240213", None) == "FAK2024021300001"

    def test_increments(self):
        assert (next_order_number("FAK20240213", "FAK2024021300009")
                == "FAK2024021300010")

    def test_widens_past_five_digits(self):
        assert (next_order_number("FAK20240213", "FAK2024021399999")
                == "FAK20240213100000")

    def test_foreign_prefix(self):
        with pytest.raises(ValueError):
            next_order_number("FAK20240213", "FAK2024021200001")

    def test_non_numeric_suffix(self):
        with pytest.raises(ValueError):
            next_order_number("FAK20240213", "FAK20240213000x1")


def _order(product_id, order_no):
    return Order(
        id=uuid.uuid4().hex, order_no=order_no, product_id=product_id,
        email="a@example.com", password_hash="x", quantity=1, amount=1,
        status="PENDING", created_at=0.0,
    )


class TestLastOrderNo:
    async def test_none_for_fresh_day(self, db):
        async with db.session.begin():
            assert await last_order_no(db.session, "FAK20240213") is None

    async def test_highest_of_prefix_only(self, db):
        product = await seed_product(db, cards=0)
        async with db.session.begin():
            db.session.add_all([
                _order(product["id"], "FAK2024021300002"),
                _order(product["id"], "FAK2024021300010"),
                _order(product["id"], "FAK2024021400001"),
            ])
        async with db.session.begin():
            last = await last_order_no(db.session, "FAK20240213")
        assert last == "FAK2024021300010"

    async def test_widened_sorts_last(self, db):
        product = await seed_product(db, cards=0)
        async with db.session.begin():
            db.session.add_all([
                _order(product["id"], "FAK2024021399999"),
                _order(product["id"], "FAK20240213100000"),
            ])
        async with db.session.begin():
            last = await last_order_no(db.session, "FAK20240213")
        assert last == "FAK20240213100000"
        assert next_order_number("FAK20240213", last) == "FAK20240213100001"
