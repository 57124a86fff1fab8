"""Model exports for the marketplace API."""
from .entities import Base, User, UserRole, utcnow
from .marketplace import (
    AuditLog,
    CartItem,
    Document,
    DocumentStatus,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentEventStatus,
)

__all__ = [
    "AuditLog",
    "Base",
    "CartItem",
    "Document",
    "DocumentStatus",
    "Order",
    "OrderStatus",
    "PaymentEvent",
    "PaymentEventStatus",
    "User",
    "UserRole",
    "utcnow",
]
