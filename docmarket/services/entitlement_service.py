"""Entitlement ledger: the durable record of who paid for which document.

The ledger never commits. Callers own the transaction so that a status change
and the balance movements it implies land together.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..errors import EntitlementExistsError
from ..models import Document, Order, OrderStatus, utcnow


@dataclass(frozen=True)
class SellerStats:
    total_sales: int
    total_revenue_cents: int
    total_downloads: int
    top_documents: list[Document]


class EntitlementLedger:
    """Queries and guarded transitions for :class:`Order` rows."""

    def __init__(self, default_max_downloads: int | None = None) -> None:
        self.default_max_downloads = default_max_downloads or get_settings().max_downloads

    # ------------------------------------------------------------------ Reads
    def get(self, session: Session, order_id: str) -> Optional[Order]:
        return session.get(Order, order_id, populate_existing=True)

    def find_completed(self, session: Session, buyer_id: str, document_id: str) -> Optional[Order]:
        return (
            session.query(Order)
            .filter(
                Order.buyer_id == buyer_id,
                Order.document_id == document_id,
                Order.status == OrderStatus.COMPLETED,
            )
            .one_or_none()
        )

    def find_by_external_reference(self, session: Session, payment_intent_id: str) -> list[Order]:
        return (
            session.query(Order)
            .filter(Order.payment_intent_id == payment_intent_id)
            .order_by(Order.created_at)
            .all()
        )

    def owned_document_ids(self, session: Session, buyer_id: str, document_ids: list[str]) -> set[str]:
        if not document_ids:
            return set()
        rows = (
            session.query(Order.document_id)
            .filter(
                Order.buyer_id == buyer_id,
                Order.document_id.in_(document_ids),
                Order.status == OrderStatus.COMPLETED,
            )
            .all()
        )
        return {row[0] for row in rows}

    def list_for_buyer(self, session: Session, buyer_id: str) -> list[Order]:
        return (
            session.query(Order)
            .filter(Order.buyer_id == buyer_id)
            .order_by(Order.created_at.desc())
            .all()
        )

    def list_for_seller(self, session: Session, seller_id: str) -> list[Order]:
        return (
            session.query(Order)
            .filter(Order.seller_id == seller_id)
            .order_by(Order.created_at.desc())
            .all()
        )

    def list_unsettled(
        self,
        session: Session,
        *,
        flagged_only: bool = False,
        stale_before: Optional[dt.datetime] = None,
    ) -> list[Order]:
        """Completed entitlements whose financial effects have not been applied.

        With ``stale_before`` only flagged rows and rows created before the
        cutoff are returned, so fresh orders still inside their own settlement
        call are left alone.
        """
        stmt = session.query(Order).filter(
            Order.status == OrderStatus.COMPLETED,
            Order.settled_at.is_(None),
        )
        if flagged_only:
            stmt = stmt.filter(Order.needs_reconciliation.is_(True))
        elif stale_before is not None:
            stmt = stmt.filter(or_(Order.needs_reconciliation.is_(True), Order.created_at <= stale_before))
        return stmt.order_by(Order.created_at).all()

    def seller_stats(self, session: Session, seller_id: str, *, top: int = 5) -> SellerStats:
        count, revenue, downloads = (
            session.query(
                func.count(Order.id),
                func.coalesce(func.sum(Order.amount_cents), 0),
                func.coalesce(func.sum(Order.download_count), 0),
            )
            .filter(Order.seller_id == seller_id, Order.status == OrderStatus.COMPLETED)
            .one()
        )
        top_documents = (
            session.query(Document)
            .filter(Document.seller_id == seller_id)
            .order_by(Document.sales_count.desc())
            .limit(top)
            .all()
        )
        return SellerStats(
            total_sales=int(count),
            total_revenue_cents=int(revenue),
            total_downloads=int(downloads),
            top_documents=top_documents,
        )

    # ---------------------------------------------------------------- Writes
    def create(
        self,
        session: Session,
        *,
        buyer_id: str,
        document_id: str,
        seller_id: str,
        amount_cents: int,
        payment_intent_id: str,
        currency: str | None = None,
        max_downloads: int | None = None,
    ) -> Order:
        """Insert a COMPLETED entitlement.

        The partial unique index on (buyer, document) for COMPLETED rows turns
        a lost race into :class:`EntitlementExistsError` instead of a generic
        database failure. The session is rolled back in that case.
        """
        now = utcnow()
        order = Order(
            buyer_id=buyer_id,
            document_id=document_id,
            seller_id=seller_id,
            amount_cents=amount_cents,
            currency=currency or get_settings().currency,
            payment_intent_id=payment_intent_id,
            status=OrderStatus.COMPLETED,
            download_count=0,
            max_downloads=max_downloads or self.default_max_downloads,
            created_at=now,
            completed_at=now,
        )
        session.add(order)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise EntitlementExistsError(buyer_id, document_id) from exc
        return order

    def mark_refunded(self, session: Session, order_id: str) -> bool:
        """Move a COMPLETED entitlement to REFUNDED.

        Returns ``True`` only for the caller that performed the transition;
        repeated calls are no-ops.
        """
        updated = (
            session.query(Order)
            .filter(Order.id == order_id, Order.status == OrderStatus.COMPLETED)
            .update(
                {Order.status: OrderStatus.REFUNDED, Order.refunded_at: utcnow()},
                synchronize_session=False,
            )
        )
        return bool(updated)

    def increment_download(self, session: Session, order_id: str) -> bool:
        """Consume one download if the entitlement is COMPLETED and under its cap.

        Check and increment happen in a single UPDATE, so concurrent requests
        can never push ``download_count`` past ``max_downloads``.
        """
        updated = (
            session.query(Order)
            .filter(
                Order.id == order_id,
                Order.status == OrderStatus.COMPLETED,
                Order.download_count < Order.max_downloads,
            )
            .update(
                {
                    Order.download_count: Order.download_count + 1,
                    Order.last_downloaded_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        return bool(updated)

    def claim_settlement(self, session: Session, order_id: str) -> bool:
        """Mark the entitlement settled; only the first claimant gets ``True``."""
        updated = (
            session.query(Order)
            .filter(
                Order.id == order_id,
                Order.status == OrderStatus.COMPLETED,
                Order.settled_at.is_(None),
            )
            .update(
                {
                    Order.settled_at: utcnow(),
                    Order.needs_reconciliation: False,
                    Order.reconciliation_note: None,
                },
                synchronize_session=False,
            )
        )
        return bool(updated)

    def flag_for_reconciliation(self, session: Session, order_id: str, note: str) -> bool:
        updated = (
            session.query(Order)
            .filter(Order.id == order_id, Order.settled_at.is_(None))
            .update(
                {Order.needs_reconciliation: True, Order.reconciliation_note: note[:2000]},
                synchronize_session=False,
            )
        )
        return bool(updated)


entitlement_ledger = EntitlementLedger()

__all__ = ["EntitlementLedger", "SellerStats", "entitlement_ledger"]
