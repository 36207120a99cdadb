"""
Shared fixtures: a throw-away SQLite file database per test, catalog seeding
helpers and an HTTP client bound to the app with that database swapped in.
"""
from __future__ import annotations

import os

# read by cardmall.config at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./cardmall-test.db")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "admin-test-pass")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from typing import Dict, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from cardmall import server
from cardmall.infra.sql import make_database
from cardmall.model import queries
from cardmall.model.db import Base, Card, Order
from cardmall.model.ratelimit import new_governor


class FakeMailer:
    def __init__(self):
        self.submitted: List[str] = []

    def submit(self, key: str) -> bool:
        self.submitted.append(key)
        return True


@pytest_asyncio.fixture
async def database(tmp_path):
    """A fresh SQLite file database with all tables created."""
    database = make_database(f"sqlite:///{tmp_path / 'cardmall.db'}")
    await database.create_all(Base.metadata)
    yield database
    await database.dispose()


@pytest.fixture
def open_db(database):
    """Factory of GatedAsyncSession context managers."""
    return database.open


@pytest_asyncio.fixture
async def db(open_db):
    async with open_db() as db:
        yield db


async def seed_product(db, *, price=500, cards=5, max_quantity=10,
                       name="Game Account"):
    product = await queries.create_product(
        db, name=name, price=price, max_quantity=max_quantity,
    )
    if cards:
        await queries.import_cards(
            db, product["id"], [f"{name}-card-{i}" for i in range(cards)]
        )
    return product


async def card_snapshot(open_db, product_id: str) -> Dict[str, tuple]:
    """card id -> (status, order_id), read through a fresh session."""
    async with open_db() as db:
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Card.id, Card.status, Card.order_id)
                .where(Card.product_id == product_id)
            )).all()
    return {cid: (status, oid) for cid, status, oid in rows}


async def load_order(open_db, *, order_id=None, order_no=None) -> Order:
    async with open_db() as db:
        async with db.session.begin():
            where = (Order.id == order_id if order_id is not None
                     else Order.order_no == order_no)
            return (await db.session.execute(
                select(Order).where(where)
            )).scalar_one_or_none()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def restock_mailer():
    return FakeMailer()


@pytest_asyncio.fixture
async def client(database, mailer, restock_mailer, monkeypatch):
    monkeypatch.setattr(server, "database", database)
    server.app.state.governor = new_governor(server.BUCKETS)
    server.app.state.mailer = mailer
    server.app.state.restock_mailer = restock_mailer
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c
    server.app.state.mailer = None
    server.app.state.restock_mailer = None
