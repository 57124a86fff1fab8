"""Utility helpers for structured logging."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

ledger_logger = logging.getLogger("docmarket.ledger")


def configure_logging(level: str = "INFO") -> None:
    """Install a basic handler for the service loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def log_ledger_event(
    *,
    level: str,
    event: str,
    payment_intent_id: Optional[str] = None,
    order_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    document_id: Optional[str] = None,
    amount_cents: Optional[int] = None,
    detail: Optional[str] = None,
) -> None:
    """Emit a structured JSON log line for fulfillment, refund and download events."""
    payload: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "level": level.upper(),
        "event": event,
        "payment_intent_id": payment_intent_id,
        "order_id": order_id,
        "buyer_id": buyer_id,
        "document_id": document_id,
        "amount_cents": amount_cents,
        "detail": detail,
    }
    ledger_logger.log(
        getattr(logging, level.upper(), logging.INFO),
        json.dumps(payload, separators=(",", ":")),
    )
