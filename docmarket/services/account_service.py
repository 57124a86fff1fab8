"""Seller balance ledger.

All changes are issued as ``column = column ± amount`` updates so concurrent
fulfillments and refunds never overwrite each other.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from ..errors import AccountLedgerError
from ..models import User


class AccountLedger:
    """Atomic increments and decrements on seller accounts."""

    def _adjust(self, session: Session, user_id: str, column, delta: int) -> None:
        updated = (
            session.query(User)
            .filter(User.id == user_id)
            .update({column: column + delta}, synchronize_session=False)
        )
        if not updated:
            raise AccountLedgerError(f"Account {user_id} not found")

    def increment_balance(self, session: Session, user_id: str, amount_cents: int) -> None:
        self._adjust(session, user_id, User.balance_cents, amount_cents)

    def decrement_balance(self, session: Session, user_id: str, amount_cents: int) -> None:
        self._adjust(session, user_id, User.balance_cents, -amount_cents)

    def increment_lifetime_sales(self, session: Session, user_id: str, amount_cents: int) -> None:
        self._adjust(session, user_id, User.total_sales_cents, amount_cents)

    def decrement_lifetime_sales(self, session: Session, user_id: str, amount_cents: int) -> None:
        self._adjust(session, user_id, User.total_sales_cents, -amount_cents)

    def credit_sale(self, session: Session, seller_id: str, seller_share_cents: int) -> None:
        """Credit a sale to the seller inside the caller's transaction."""
        self.increment_balance(session, seller_id, seller_share_cents)
        self.increment_lifetime_sales(session, seller_id, seller_share_cents)

    def reverse_sale(self, session: Session, seller_id: str, seller_share_cents: int) -> None:
        """Claw back a previously credited sale. The balance may go negative."""
        self.decrement_balance(session, seller_id, seller_share_cents)
        self.decrement_lifetime_sales(session, seller_id, seller_share_cents)


account_ledger = AccountLedger()

__all__ = ["AccountLedger", "account_ledger"]
