"""
Completion and restock e-mails, handed off through in-process queues.

`CompletionMailer.submit(order_id)` and `RestockMailer.submit(product_id)`
only enqueue; one background task per queue re-reads the rows, renders
the mail and passes it to the sender. Nothing here can fail or slow down the transaction that triggered the mail.
"""
from __future__ import annotations
import asyncio
import logging
from typing import AsyncContextManager, Callable, List, Optional

import httpx
from jinja2 import Environment, DictLoader, select_autoescape
from sqlalchemy import select, update

from .infra.sql import GatedAsyncSession
from .helpers import now_ts
from .model.db import (
    Card, Order, Product, RestockSubscription,
    CARD_SOLD, ORDER_COMPLETED, RESTOCK_NOTIFIED, RESTOCK_PENDING,
)

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

TEMPLATES = {
    "order_completion.html": """\
<!doctype html>
<html>
  <body style="font-family: sans-serif">
    <h2>{{ brand }}: order {{ order_no }} completed</h2>
    <p>Thanks for your purchase of {{ quantity }} x {{ product_name }}.</p>
    <ol>
      {% for c in cards %}<li><code>{{ c }}</code></li>
      {% endfor %}
    </ol>
    <p>You can look this order up again at
       <a href="{{ lookup_url }}">{{ lookup_url }}</a>
       with your order number and order password.</p>
  </body>
</html>
""",
    "restock_notify.html": """\
<!doctype html>
<html>
  <body style="font-family: sans-serif">
    <h2>{{ brand }}: {{ product_name }} is back in stock</h2>
    <p>Price: {{ "%.2f"|format(price / 100) }}</p>
    <p><a href="{{ product_url }}">Buy it now</a> while stock lasts.</p>
    <p>You get this mail once because you asked to be told about the restock.</p>
  </body>
</html>
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html", "xml"]),
)


class ResendSender:
    def __init__(self, http: Optional[httpx.AsyncClient], api_key: Optional[str],
                 sender: str) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender

    async def send(self, to: str, subject: str, html: str) -> bool:
        if not self.api_key or self.http is None:
            logger.info("email delivery disabled; skipping mail to %s", to)
            return False
        r = await self.http.post(
            RESEND_URL,
            json={"from": self.sender, "to": [to], "subject": subject,
                  "html": html},
            headers={"authorization": f"Bearer {self.api_key}"},
        )
        r.raise_for_status()
        return True


class MailQueue:
    """
    Bounded hand-off queue drained by one worker task. Subclasses implement
    `deliver(key)`; a failing delivery is logged and the worker moves on.
    """

    kind = "mail"

    def __init__(
        self,
        make_db: Callable[[], AsyncContextManager[GatedAsyncSession]],
        sender: ResendSender,
        *,
        brand: str,
        site_url: str,
        maxsize: int = 1000,
    ) -> None:
        self.make_db = make_db
        self.sender = sender
        self.brand = brand
        self.site_url = site_url
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None

    def submit(self, key: str) -> bool:
        try:
            self.queue.put_nowait(key)
        except asyncio.QueueFull:
            logger.error("mail queue full, dropping %s mail for %s",
                         self.kind, key)
            return False
        if self._task is None or self._task.done():
            self.start()
        return True

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            key = await self.queue.get()
            try:
                await self.deliver(key)
            except Exception:
                logger.exception("%s mail for %s failed", self.kind, key)
            finally:
                self.queue.task_done()

    async def deliver(self, key: str):
        raise NotImplementedError


class CompletionMailer(MailQueue):
    kind = "completion"

    async def deliver(self, order_id: str) -> bool:
        async with self.make_db() as db:
            async with db.gated():
                async with db.session.begin():
                    row = (await db.session.execute(
                        select(Order, Product.name)
                        .join(Product, Product.id == Order.product_id)
                        .where(Order.id == order_id)
                    )).first()
                    cards: List[str] = []
                    if row is not None:
                        cards = list((await db.session.execute(
                            select(Card.content)
                            .where(Card.order_id == order_id,
                                   Card.status == CARD_SOLD)
                            .order_by(Card.created_at.asc(), Card.id.asc())
                        )).scalars())

        if row is None or row[0].status != ORDER_COMPLETED:
            return False
        order, product_name = row
        html = env.get_template("order_completion.html").render(
            brand=self.brand,
            order_no=order.order_no,
            product_name=product_name,
            quantity=order.quantity,
            cards=cards,
            lookup_url=f"{self.site_url}/orders/lookup",
        )
        subject = f"[{self.brand}] Order {order.order_no} completed"
        sent = await self.sender.send(order.email, subject, html)
        if sent:
            logger.info("completion mail sent for order %s", order.order_no)
        return sent


class RestockMailer(MailQueue):
    """Mails PENDING restock subscribers of a product, then marks them NOTIFIED."""

    kind = "restock"

    async def deliver(self, product_id: str) -> int:
        async with self.make_db() as db:
            async with db.gated():
                async with db.session.begin():
                    product = await db.session.get(Product, product_id)
                    subs = (await db.session.execute(
                        select(RestockSubscription.id,
                               RestockSubscription.email)
                        .where(RestockSubscription.product_id == product_id,
                               RestockSubscription.status == RESTOCK_PENDING)
                    )).all()

        if product is None or not subs:
            return 0
        html = env.get_template("restock_notify.html").render(
            brand=self.brand,
            product_name=product.name,
            price=product.price,
            product_url=f"{self.site_url}/products/{product.id}",
        )
        subject = f"[{self.brand}] {product.name} is back in stock"

        sent_ids = []
        for sub_id, email in subs:
            try:
                if await self.sender.send(email, subject, html):
                    sent_ids.append(sub_id)
            except httpx.HTTPError as e:
                logger.warning("restock mail to %s failed: %s", email, e)
        logger.info("restock mails for product %s: %d/%d sent",
                    product_id, len(sent_ids), len(subs))

        if sent_ids:
            async with self.make_db() as db:
                async with db.gated():
                    async with db.session.begin():
                        await db.session.execute(
                            update(RestockSubscription)
                            .where(RestockSubscription.id.in_(sent_ids),
                                   RestockSubscription.status == RESTOCK_PENDING)
                            .values(status=RESTOCK_NOTIFIED,
                                    notified_at=now_ts(), updated_at=now_ts())
                            .execution_options(synchronize_session=False)
                        )
        return len(sent_ids)
