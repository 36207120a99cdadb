from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)


Base = declarative_base()

# Product status
PRODUCT_ACTIVE = "ACTIVE"
PRODUCT_INACTIVE = "INACTIVE"

# Card status
CARD_UNSOLD = "UNSOLD"
CARD_RESERVED = "RESERVED"
CARD_SOLD = "SOLD"
CARD_STATUSES = (CARD_UNSOLD, CARD_RESERVED, CARD_SOLD)

# Order status
ORDER_PENDING = "PENDING"
ORDER_COMPLETED = "COMPLETED"
ORDER_CLOSED = "CLOSED"

# Restock subscription status
RESTOCK_PENDING = "PENDING"
RESTOCK_NOTIFIED = "NOTIFIED"


# ----------------------------
# ORM models
# ----------------------------
class Tag(Base):
    __tablename__ = "tags"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    max_quantity = Column(Integer, nullable=False, default=10)

    # ACTIVE | INACTIVE
    status = Column(String, nullable=False, default=PRODUCT_ACTIVE)
    tag_id = Column(String, ForeignKey("tags.id"), nullable=True)
    created_at = Column(Float, nullable=False)


class Card(Base):
    __tablename__ = "cards"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    content = Column(Text, nullable=False)

    # UNSOLD | RESERVED | SOLD; order_id is set iff status != UNSOLD
    status = Column(String, nullable=False, default=CARD_UNSOLD)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("cards_product_status_created_idx",
              "product_id", "status", "created_at"),
        Index("cards_order_idx", "order_id"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_no = Column(String, nullable=False, unique=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    email = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # cents

    # PENDING | COMPLETED | CLOSED
    status = Column(String, nullable=False, default=ORDER_PENDING)
    client_ip = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    closed_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("orders_status_created_idx", "status", "created_at"),
        Index("orders_email_idx", "email"),
    )


class RestockSubscription(Base):
    __tablename__ = "restock_subscriptions"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    email = Column(String, nullable=False)

    # PENDING until the restock mail went out, then NOTIFIED
    status = Column(String, nullable=False, default=RESTOCK_PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    notified_at = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("product_id", "email",
                         name="restock_product_email_uq"),
        Index("restock_product_status_idx", "product_id", "status"),
    )
