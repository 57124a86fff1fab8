"""CLI worker that re-drives settlement for entitlements missing their financial effects."""
from __future__ import annotations

import argparse
import sys
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from .config import get_settings
from .database import session_scope
from .errors import MarketplaceError
from .logging_utils import configure_logging
from .services.checkout_service import CheckoutService, SettlementOutcome, checkout_service


def main(
    argv: Sequence[str] | None = None,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    service: Optional[CheckoutService] = None,
) -> int:
    parser = argparse.ArgumentParser(description="Reconcile unsettled marketplace orders")
    parser.add_argument("--order-id", help="Reconcile a single order instead of the whole queue")
    parser.add_argument(
        "--flagged-only",
        action="store_true",
        help="Only retry orders flagged after a failed settlement",
    )
    parser.add_argument(
        "--grace-seconds",
        type=int,
        help="Age after which an unflagged unsettled order is considered stuck",
    )
    args = parser.parse_args(argv)

    configure_logging(get_settings().log_level)
    service = service or checkout_service
    try:
        with session_scope(session_factory) as session:
            results = service.reconcile(
                session,
                order_id=args.order_id,
                flagged_only=args.flagged_only,
                grace_seconds=args.grace_seconds,
            )
    except MarketplaceError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2

    for item in results:
        print(f"{item.order_id}: {item.outcome.value}")
    flagged = [item for item in results if item.outcome == SettlementOutcome.FLAGGED]
    print(f"Reconciled {len(results) - len(flagged)} of {len(results)} orders")
    return 1 if flagged else 0


if __name__ == "__main__":
    sys.exit(main())
