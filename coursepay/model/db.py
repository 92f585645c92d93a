from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    ForeignKey,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# order statuses; only pending -> paid is allowed
ORDER_PENDING = "pending"
ORDER_PAID = "paid"

PROMO_PERCENT = "percent"
PROMO_FIXED = "fixed"


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    # gateway InvId, 1 .. 2**31-1
    invoice_id = Column(Integer, primary_key=True, autoincrement=False)
    email = Column(String, nullable=False)
    amount = Column(String, nullable=False)  # "5490.00", as signed
    product_code = Column(String, nullable=True)
    promo_code = Column(String, nullable=True)
    promo_discount = Column(String, nullable=True)

    status = Column(String, nullable=False, default=ORDER_PENDING)
    receipt_json = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class MagicLink(Base):
    __tablename__ = "magic_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    token = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    consumed_at = Column(Float, nullable=True)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    granted_at = Column(Float, nullable=False)
    ends_at = Column(Float, nullable=True)  # NULL = perpetual


class PromoCode(Base):
    __tablename__ = "promo_codes"
    code = Column(String, primary_key=True)  # upper-case
    type = Column(String, nullable=False, default=PROMO_PERCENT)
    value = Column(String, nullable=False)
    min_amount = Column(String, nullable=True)
    starts_at = Column(Float, nullable=True)
    expires_at = Column(Float, nullable=True)
    max_uses = Column(Integer, nullable=True)
    max_uses_per_email = Column(Integer, nullable=True)


class PromoUsage(Base):
    __tablename__ = "promo_usages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, nullable=False)
    email = Column(String, nullable=False)
    used_at = Column(Float, nullable=False)
    invoice_id = Column(Integer, nullable=True)


Index("ix_promo_usages_code_email", PromoUsage.code, PromoUsage.email)
Index("ix_orders_created_at", Order.created_at)


async def create_schema(conn: AsyncConnection) -> None:
    # CREATE TABLE IF NOT EXISTS for every model; safe to run on each start
    await conn.run_sync(Base.metadata.create_all)
