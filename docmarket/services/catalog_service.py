"""Catalog and cart access used by checkout."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import CartItem, Document, DocumentStatus

logger = logging.getLogger(__name__)


class CatalogStore:
    """Read documents and bump their sales counters."""

    def get_document(self, session: Session, document_id: str) -> Optional[Document]:
        return session.query(Document).filter(Document.id == document_id).one_or_none()

    def get_documents(self, session: Session, document_ids: Iterable[str]) -> list[Document]:
        ids = list(document_ids)
        if not ids:
            return []
        return session.query(Document).filter(Document.id.in_(ids)).all()

    def increment_sales(self, session: Session, document_id: str) -> bool:
        """Add one sale to the document counter inside the caller's transaction.

        Returns ``False`` when the document no longer exists; historical
        orders keep their own snapshot so a vanished row is not an error.
        """
        updated = (
            session.query(Document)
            .filter(Document.id == document_id)
            .update({Document.sales_count: Document.sales_count + 1}, synchronize_session=False)
        )
        return bool(updated)


class CartStore:
    """Buyer carts. Cleanup after checkout is best effort."""

    def list_items(self, session: Session, user_id: str) -> list[CartItem]:
        return (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id)
            .order_by(CartItem.created_at.desc())
            .all()
        )

    def add_item(self, session: Session, user_id: str, document: Document) -> CartItem:
        existing = (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.document_id == document.id)
            .one_or_none()
        )
        if existing:
            return existing
        item = CartItem(user_id=user_id, document_id=document.id)
        session.add(item)
        session.flush()
        return item

    def remove_items(self, session: Session, user_id: str, document_ids: Iterable[str]) -> int:
        """Delete cart rows for the given documents; never raises."""
        ids = list(document_ids)
        if not ids:
            return 0
        try:
            removed = (
                session.query(CartItem)
                .filter(CartItem.user_id == user_id, CartItem.document_id.in_(ids))
                .delete(synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.warning(
                "Cart cleanup failed",
                exc_info=True,
                extra={"user_id": user_id, "document_ids": ids},
            )
            return 0
        return removed


def is_purchasable(document: Document | None) -> bool:
    return document is not None and document.status == DocumentStatus.APPROVED


catalog_store = CatalogStore()
cart_store = CartStore()

__all__ = ["CatalogStore", "CartStore", "catalog_store", "cart_store", "is_purchasable"]
