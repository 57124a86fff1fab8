"""SQLAlchemy models for marketplace accounts."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Permission level of a marketplace account."""

    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


class User(Base):
    """Persisted account with its running seller balance.

    ``balance_cents`` and ``total_sales_cents`` are only ever changed through
    SQL-side increments issued by the account ledger. The balance may go
    negative when a refund claws back a credit that was already paid out.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.BUYER, nullable=False)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    balance_cents = Column(Integer, default=0, nullable=False)
    total_sales_cents = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    documents = relationship("Document", back_populates="seller")
    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="buyer", foreign_keys="Order.buyer_id")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
