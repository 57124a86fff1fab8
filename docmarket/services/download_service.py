"""Download gate enforcing ownership, order state and the per-order cap."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy.orm import Session

from ..errors import ForbiddenError, InvalidStateError, LimitExceededError, NotFoundError
from ..logging_utils import log_ledger_event
from ..models import Order, OrderStatus
from . import object_storage
from .entitlement_service import EntitlementLedger, entitlement_ledger

logger = logging.getLogger(__name__)


@dataclass
class DownloadGrant:
    order: Order
    file_name: str
    content_type: str
    chunks: Iterator[bytes]


class DownloadGate:
    """Authorize a download and consume one unit of the order's allowance."""

    def __init__(self, ledger: EntitlementLedger | None = None) -> None:
        self.ledger = ledger or entitlement_ledger

    def _check(self, order: Order | None, requesting_user_id: str) -> Order:
        if order is None:
            raise NotFoundError("Order not found")
        if order.buyer_id != requesting_user_id:
            raise ForbiddenError("Access denied")
        if order.status != OrderStatus.COMPLETED:
            raise InvalidStateError("Order not completed", code="ORDER_NOT_COMPLETED")
        if order.download_count >= order.max_downloads:
            raise LimitExceededError("Download limit reached")
        return order

    def download(self, session: Session, order_id: str, requesting_user_id: str) -> DownloadGrant:
        order = self._check(self.ledger.get(session, order_id), requesting_user_id)

        document = order.document
        if document is None or not object_storage.exists(document.file_key):
            logger.error(
                "Stored file missing for order",
                extra={"order_id": order_id, "document_id": order.document_id},
            )
            raise NotFoundError("File not found", code="FILE_NOT_FOUND")
        file_key, file_name, content_type = document.file_key, document.file_name, document.content_type

        if not self.ledger.increment_download(session, order_id):
            session.rollback()
            # Lost a race with another download or a refund; re-read to report which.
            self._check(self.ledger.get(session, order_id), requesting_user_id)
            raise LimitExceededError("Download limit reached")
        session.commit()

        order = self.ledger.get(session, order_id)
        log_ledger_event(
            level="info",
            event="download_granted",
            order_id=order_id,
            buyer_id=requesting_user_id,
            document_id=order.document_id,
            detail=f"{order.download_count}/{order.max_downloads}",
        )
        return DownloadGrant(
            order=order,
            file_name=file_name,
            content_type=content_type,
            chunks=object_storage.iter_bytes(file_key),
        )


download_gate = DownloadGate()

__all__ = ["DownloadGate", "DownloadGrant", "download_gate"]
