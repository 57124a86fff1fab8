"""Marketplace ORM models: catalog, cart, orders and payment events."""
from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, validates

from .entities import Base, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):
    """Moderation state of an uploaded document."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class OrderStatus(str, Enum):
    """Lifecycle of an entitlement row."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class Document(Base):
    """Study material listed by a seller."""

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("price_cents > 0", name="ck_documents_price_positive"),
        CheckConstraint("sales_count >= 0", name="ck_documents_sales_count_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    file_key = Column(String(512), nullable=False)
    file_name = Column(String(255), nullable=False)
    content_type = Column(String(128), default="application/octet-stream", nullable=False)
    price_cents = Column(Integer, nullable=False)
    status = Column(SQLEnum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False)
    sales_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    seller = relationship("User", back_populates="documents")


class CartItem(Base):
    """A document waiting in a buyer's cart."""

    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "document_id", name="uq_cart_items_user_document"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("User", back_populates="cart_items")
    document = relationship("Document")


class Order(Base):
    """Entitlement created by a confirmed payment.

    At most one COMPLETED row may exist per (buyer, document); the partial
    unique index below is the last line of defence when the confirm call and
    the webhook race each other. Rows are never deleted, only moved to
    REFUNDED.
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index(
            "uq_orders_completed_buyer_document",
            "buyer_id",
            "document_id",
            unique=True,
            sqlite_where=text("status = 'COMPLETED'"),
            postgresql_where=text("status = 'COMPLETED'"),
        ),
        CheckConstraint("download_count >= 0", name="ck_orders_download_count_non_negative"),
        CheckConstraint("download_count <= max_downloads", name="ck_orders_download_cap"),
        CheckConstraint("max_downloads > 0", name="ck_orders_max_downloads_positive"),
        CheckConstraint("amount_cents >= 0", name="ck_orders_amount_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(8), default="usd", nullable=False)
    payment_intent_id = Column(String(255), nullable=False, index=True)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    max_downloads = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    last_downloaded_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    needs_reconciliation = Column(Boolean, default=False, nullable=False, index=True)
    reconciliation_note = Column(Text, nullable=True)

    buyer = relationship("User", back_populates="orders", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    document = relationship("Document")

    @validates("amount_cents")
    def _freeze_amount(self, key, value):
        if self.amount_cents is not None and value != self.amount_cents:
            raise ValueError("Order amount is immutable once captured")
        return value

    @property
    def downloads_remaining(self) -> int:
        return max(self.max_downloads - self.download_count, 0)


class PaymentEvent(Base):
    """Verified gateway event, kept for audit and redelivery short-circuiting."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(128), nullable=False)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    status = Column(String(32), default=PaymentEventStatus.RECEIVED.value, nullable=False)
    payload_json = Column(JSON, default=dict)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    """Immutable audit entries for ledger actions."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    actor_user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String(128), nullable=False)
    entity = Column(String(128), nullable=False)
    entity_id = Column(String(64), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    details_json = Column(JSON, default=dict)

    actor = relationship("User")
