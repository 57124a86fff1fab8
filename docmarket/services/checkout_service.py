"""Checkout orchestration: payments in, entitlements and seller credits out.

Two triggers reach :meth:`CheckoutService.fulfill_payment`: the buyer's
synchronous confirm call and the gateway webhook. Either may arrive first and
the webhook may arrive many times. Entitlement creation is the single choke
point: only the request that inserts the row goes on to settle it, and
settlement itself is claimed once through ``Order.settled_at``.
"""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..config import get_settings
from ..errors import (
    AccountLedgerError,
    ConflictError,
    EntitlementExistsError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..logging_utils import log_ledger_event
from ..models import (
    AuditLog,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentEventStatus,
    User,
    utcnow,
)
from .account_service import AccountLedger, account_ledger
from .catalog_service import CartStore, CatalogStore, cart_store, catalog_store, is_purchasable
from .entitlement_service import EntitlementLedger, entitlement_ledger
from .stripe_service import PaymentIntentSnapshot, StripeService

logger = logging.getLogger(__name__)

_RETRYABLE = (SQLAlchemyError, AccountLedgerError)


class FulfillmentOutcome(str, Enum):
    FULFILLED = "fulfilled"
    ALREADY_FULFILLED = "already_fulfilled"
    DOCUMENT_NOT_FOUND = "document_not_found"
    FLAGGED = "flagged_for_reconciliation"
    FAILED = "failed"


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    FLAGGED = "flagged_for_reconciliation"


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    ALREADY_REFUNDED = "already_refunded"
    NOT_REFUNDABLE = "not_refundable"


@dataclass(frozen=True)
class CheckoutHandle:
    payment_intent_id: str
    client_secret: str | None
    amount_cents: int
    currency: str
    document_ids: list[str]


@dataclass(frozen=True)
class FulfillmentItem:
    document_id: str
    outcome: FulfillmentOutcome
    order_id: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class FulfillmentResult:
    payment_intent_id: str
    buyer_id: str
    items: list[FulfillmentItem] = field(default_factory=list)

    @property
    def order_ids(self) -> list[str]:
        return [item.order_id for item in self.items if item.order_id]

    @property
    def retry_required(self) -> bool:
        """True when an item failed for a transient reason and the trigger should be replayed."""
        return any(item.outcome == FulfillmentOutcome.FAILED for item in self.items)


@dataclass(frozen=True)
class SettlementItem:
    order_id: str
    outcome: SettlementOutcome


@dataclass(frozen=True)
class RefundItem:
    order_id: str
    outcome: RefundOutcome
    reversed_cents: int = 0


@dataclass(frozen=True)
class RefundResult:
    payment_intent_id: str
    items: list[RefundItem] = field(default_factory=list)


@dataclass(frozen=True)
class EventOutcome:
    event_id: str
    event_type: str
    status: str
    fulfillment: FulfillmentResult | None = None
    refund: RefundResult | None = None

    @property
    def retry_required(self) -> bool:
        return self.status == PaymentEventStatus.FAILED.value


class CheckoutService:
    """Turn confirmed payments into entitlements, seller credits and refunds."""

    def __init__(
        self,
        *,
        gateway: StripeService | None = None,
        ledger: EntitlementLedger | None = None,
        catalog: CatalogStore | None = None,
        accounts: AccountLedger | None = None,
        cart: CartStore | None = None,
        commission_bps: int | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        reconcile_grace_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.gateway = gateway or StripeService()
        self.ledger = ledger or entitlement_ledger
        self.catalog = catalog or catalog_store
        self.accounts = accounts or account_ledger
        self.cart = cart or cart_store
        self.commission_bps = settings.commission_bps if commission_bps is None else commission_bps
        self.max_attempts = max_attempts or settings.fulfillment_retry_attempts
        self.backoff_seconds = (
            settings.fulfillment_retry_backoff if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = (
            settings.fulfillment_retry_backoff_max if backoff_max_seconds is None else backoff_max_seconds
        )
        self.reconcile_grace_seconds = (
            settings.reconcile_grace_seconds if reconcile_grace_seconds is None else reconcile_grace_seconds
        )

    # ------------------------------------------------------------------ Payout
    def calculate_payout(self, amount_cents: int) -> tuple[int, int]:
        """Split a charge into (seller_share, platform_fee) using the canonical commission."""
        seller_bps = 10000 - self.commission_bps
        seller_cut = amount_cents * seller_bps // 10000
        platform_cut = amount_cents - seller_cut
        return seller_cut, platform_cut

    # ---------------------------------------------------------------- Checkout
    def _normalize_document_ids(self, document_ids: Any) -> list[str]:
        if not isinstance(document_ids, (list, tuple)) or not document_ids:
            raise ValidationError("No items provided")

        normalized: list[str] = []
        invalid: list[str] = []
        for raw in document_ids:
            try:
                value = str(uuid.UUID(str(raw)))
            except (TypeError, ValueError, AttributeError):
                invalid.append(str(raw))
                continue
            if value not in normalized:
                normalized.append(value)
        if invalid:
            raise ValidationError("Invalid document id", details={"document_ids": invalid})
        if len(normalized) > self.settings.max_checkout_items:
            raise ValidationError(
                f"A checkout may contain at most {self.settings.max_checkout_items} documents"
            )
        return normalized

    def create_checkout(self, session: Session, buyer: User, document_ids: Iterable[str]) -> CheckoutHandle:
        """Price the requested documents and open a payment intent for them."""
        ids = self._normalize_document_ids(list(document_ids) if document_ids is not None else None)

        documents = {doc.id: doc for doc in self.catalog.get_documents(session, ids)}
        missing = [doc_id for doc_id in ids if not is_purchasable(documents.get(doc_id))]
        if missing:
            raise NotFoundError(
                "Some items not found",
                code="DOCUMENT_NOT_FOUND",
                details={"document_ids": missing},
            )

        owned = self.ledger.owned_document_ids(session, buyer.id, ids)
        if owned:
            raise ConflictError(
                "Some items are already purchased",
                code="ALREADY_PURCHASED",
                details={"document_ids": sorted(owned)},
            )

        amount_cents = sum(documents[doc_id].price_cents for doc_id in ids)
        intent = self.gateway.create_payment_intent(
            amount_cents=amount_cents,
            currency=self.settings.currency,
            buyer_id=buyer.id,
            document_ids=ids,
        )
        log_ledger_event(
            level="info",
            event="checkout_created",
            payment_intent_id=intent.id,
            buyer_id=buyer.id,
            amount_cents=amount_cents,
        )
        return CheckoutHandle(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount_cents=amount_cents,
            currency=intent.currency,
            document_ids=ids,
        )

    def _verified_intent(self, buyer: User, payment_intent_id: Any) -> PaymentIntentSnapshot:
        if not isinstance(payment_intent_id, str) or not payment_intent_id.strip():
            raise ValidationError("paymentIntentId is required")
        intent = self.gateway.retrieve_payment_intent(payment_intent_id.strip())
        if not intent.succeeded:
            raise InvalidStateError("Payment not successful", code="PAYMENT_NOT_SUCCEEDED")
        if intent.buyer_id != buyer.id:
            raise ForbiddenError("Payment belongs to another account")
        return intent

    def confirm_checkout(self, session: Session, buyer: User, payment_intent_id: str) -> FulfillmentResult:
        """Synchronous trigger: verify the payment with the gateway, then fulfill it."""
        intent = self._verified_intent(buyer, payment_intent_id)
        return self.fulfill_payment(
            session,
            payment_intent_id=intent.id,
            buyer_id=buyer.id,
            document_ids=intent.document_ids,
            currency=intent.currency,
        )

    def purchase_document(
        self,
        session: Session,
        buyer: User,
        document_id: str,
        payment_intent_id: str,
    ) -> Order:
        """Deliberately create one entitlement; a duplicate is a Conflict, not a skip."""
        (normalized,) = self._normalize_document_ids([document_id])
        intent = self._verified_intent(buyer, payment_intent_id)
        if normalized not in intent.document_ids:
            raise ValidationError("Payment does not cover this document", code="PAYMENT_MISMATCH")

        if self.catalog.get_document(session, normalized) is None:
            raise NotFoundError("Document not found", code="DOCUMENT_NOT_FOUND")
        if self.ledger.find_completed(session, buyer.id, normalized):
            raise EntitlementExistsError(buyer.id, normalized)

        item = self._fulfill_item(
            session,
            payment_intent_id=intent.id,
            buyer_id=buyer.id,
            document_id=normalized,
            currency=intent.currency,
            strict=True,
        )
        if item.order_id is None:
            raise NotFoundError("Document not found", code=item.error_code or "DOCUMENT_NOT_FOUND")
        order = self.ledger.get(session, item.order_id)
        self.cart.remove_items(session, buyer.id, [normalized])
        return order

    # ------------------------------------------------------------- Fulfillment
    def fulfill_payment(
        self,
        session: Session,
        *,
        payment_intent_id: str,
        buyer_id: str,
        document_ids: Iterable[str],
        currency: str | None = None,
    ) -> FulfillmentResult:
        """Create and settle one entitlement per document, each pair independently."""
        if session.get(User, buyer_id) is None:
            raise NotFoundError("Buyer not found", code="BUYER_NOT_FOUND")

        items: list[FulfillmentItem] = []
        for document_id in dict.fromkeys(str(doc_id) for doc_id in document_ids):
            items.append(
                self._fulfill_item(
                    session,
                    payment_intent_id=payment_intent_id,
                    buyer_id=buyer_id,
                    document_id=document_id,
                    currency=currency,
                )
            )

        owned = [item.document_id for item in items if item.order_id]
        self.cart.remove_items(session, buyer_id, owned)
        return FulfillmentResult(payment_intent_id=payment_intent_id, buyer_id=buyer_id, items=items)

    def _fulfill_item(
        self,
        session: Session,
        *,
        payment_intent_id: str,
        buyer_id: str,
        document_id: str,
        currency: str | None,
        strict: bool = False,
    ) -> FulfillmentItem:
        try:
            existing = self.ledger.find_completed(session, buyer_id, document_id)
            if existing is not None:
                if strict:
                    self._settle_pending(session, existing)
                    raise EntitlementExistsError(buyer_id, document_id)
                return self._skipped(session, payment_intent_id, buyer_id, document_id, existing)

            document = self.catalog.get_document(session, document_id)
            if document is None:
                logger.warning(
                    "Document missing at fulfillment",
                    extra={"payment_intent_id": payment_intent_id, "document_id": document_id},
                )
                log_ledger_event(
                    level="warning",
                    event="fulfillment_document_missing",
                    payment_intent_id=payment_intent_id,
                    buyer_id=buyer_id,
                    document_id=document_id,
                )
                return FulfillmentItem(
                    document_id=document_id,
                    outcome=FulfillmentOutcome.DOCUMENT_NOT_FOUND,
                    error_code="DOCUMENT_NOT_FOUND",
                )

            try:
                order = self.ledger.create(
                    session,
                    buyer_id=buyer_id,
                    document_id=document_id,
                    seller_id=document.seller_id,
                    amount_cents=document.price_cents,
                    payment_intent_id=payment_intent_id,
                    currency=currency,
                )
            except EntitlementExistsError:
                winner = self.ledger.find_completed(session, buyer_id, document_id)
                if winner is None:
                    # The insert failed for a reason other than the uniqueness guard.
                    raise
                if strict:
                    raise
                return self._skipped(session, payment_intent_id, buyer_id, document_id, winner)

            order_id = order.id
            amount_cents = order.amount_cents
            session.add(
                AuditLog(
                    actor_user_id=buyer_id,
                    action="order_fulfilled",
                    entity="order",
                    entity_id=order_id,
                    details_json={
                        "payment_intent_id": payment_intent_id,
                        "document_id": document_id,
                        "amount_cents": amount_cents,
                    },
                )
            )
            session.commit()
        except EntitlementExistsError:
            if strict:
                raise
            session.rollback()
            logger.exception(
                "Entitlement insert rejected",
                extra={"payment_intent_id": payment_intent_id, "document_id": document_id},
            )
            return FulfillmentItem(document_id=document_id, outcome=FulfillmentOutcome.FAILED, error_code="STORAGE_ERROR")
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "Entitlement creation failed",
                extra={"payment_intent_id": payment_intent_id, "document_id": document_id},
            )
            return FulfillmentItem(document_id=document_id, outcome=FulfillmentOutcome.FAILED, error_code="STORAGE_ERROR")

        log_ledger_event(
            level="info",
            event="entitlement_created",
            payment_intent_id=payment_intent_id,
            order_id=order_id,
            buyer_id=buyer_id,
            document_id=document_id,
            amount_cents=amount_cents,
        )

        settlement = self.settle(session, order_id)
        if settlement == SettlementOutcome.FLAGGED:
            return FulfillmentItem(
                document_id=document_id,
                outcome=FulfillmentOutcome.FLAGGED,
                order_id=order_id,
                error_code="RECONCILIATION_REQUIRED",
            )
        return FulfillmentItem(document_id=document_id, outcome=FulfillmentOutcome.FULFILLED, order_id=order_id)

    def _settle_pending(self, session: Session, order: Order) -> SettlementOutcome | None:
        """Finish settlement for an entitlement whose creator never got that far."""
        if order.settled_at is not None:
            return None
        order_id = order.id
        logger.warning("Existing entitlement is unsettled; settling now", extra={"order_id": order_id})
        # Release the read transaction before the settlement claim.
        session.rollback()
        return self.settle(session, order_id)

    def _skipped(
        self,
        session: Session,
        payment_intent_id: str,
        buyer_id: str,
        document_id: str,
        order: Order,
    ) -> FulfillmentItem:
        order_id = order.id
        logger.info(
            "Skipping already fulfilled purchase",
            extra={"payment_intent_id": payment_intent_id, "buyer_id": buyer_id, "document_id": document_id},
        )
        log_ledger_event(
            level="info",
            event="fulfillment_skipped",
            payment_intent_id=payment_intent_id,
            order_id=order_id,
            buyer_id=buyer_id,
            document_id=document_id,
        )
        if self._settle_pending(session, order) == SettlementOutcome.FLAGGED:
            return FulfillmentItem(
                document_id=document_id,
                outcome=FulfillmentOutcome.FLAGGED,
                order_id=order_id,
                error_code="RECONCILIATION_REQUIRED",
            )
        return FulfillmentItem(
            document_id=document_id,
            outcome=FulfillmentOutcome.ALREADY_FULFILLED,
            order_id=order_id,
        )

    # -------------------------------------------------------------- Settlement
    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(_RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _apply_settlement(self, session: Session, order_id: str) -> bool:
        """Claim settlement and apply the sales counter and seller credit in one transaction."""
        try:
            if not self.ledger.claim_settlement(session, order_id):
                session.rollback()
                return False
            order = self.ledger.get(session, order_id)
            seller_share, platform_fee = self.calculate_payout(order.amount_cents)
            counted = self.catalog.increment_sales(session, order.document_id)
            if not counted:
                # The entitlement and seller credit still stand without the listing row.
                logger.warning(
                    "Document missing while settling; sales counter not updated",
                    extra={"order_id": order.id, "document_id": order.document_id},
                )
                log_ledger_event(
                    level="warning",
                    event="sales_counter_skipped",
                    order_id=order.id,
                    document_id=order.document_id,
                )
            self.accounts.credit_sale(session, order.seller_id, seller_share)
            session.add(
                AuditLog(
                    actor_user_id=None,
                    action="order_settled",
                    entity="order",
                    entity_id=order.id,
                    details_json={
                        "seller_id": order.seller_id,
                        "seller_share_cents": seller_share,
                        "platform_fee_cents": platform_fee,
                        "sales_counter_updated": counted,
                    },
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        return True

    def settle(self, session: Session, order_id: str) -> SettlementOutcome:
        """Apply an entitlement's financial effects exactly once, retrying or flagging on failure."""
        try:
            applied = self._retrying()(self._apply_settlement, session, order_id)
        except _RETRYABLE as exc:
            self._flag(session, order_id, exc)
            return SettlementOutcome.FLAGGED
        if applied:
            log_ledger_event(level="info", event="entitlement_settled", order_id=order_id)
            return SettlementOutcome.SETTLED
        return SettlementOutcome.ALREADY_SETTLED

    def _flag(self, session: Session, order_id: str, exc: BaseException) -> None:
        note = f"{type(exc).__name__}: {exc}"
        logger.error(
            "Settlement failed after retries; flagging for reconciliation",
            extra={"order_id": order_id, "error": note},
        )
        log_ledger_event(level="error", event="settlement_flagged", order_id=order_id, detail=note)
        try:
            self.ledger.flag_for_reconciliation(session, order_id, note)
            session.add(
                AuditLog(
                    actor_user_id=None,
                    action="order_flagged",
                    entity="order",
                    entity_id=order_id,
                    details_json={"error": note},
                )
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            # settled_at stays NULL: the default reconcile() pass picks the order up once
            # it is older than the grace period, and a replayed payment settles it directly.
            logger.exception("Could not persist reconciliation flag", extra={"order_id": order_id})

    def stale_cutoff(self, grace_seconds: int | None = None) -> dt.datetime:
        """Unflagged unsettled orders created at or before this instant are due for reconciliation."""
        grace = self.reconcile_grace_seconds if grace_seconds is None else grace_seconds
        return utcnow() - dt.timedelta(seconds=grace)

    def reconcile(
        self,
        session: Session,
        *,
        order_id: str | None = None,
        flagged_only: bool = False,
        grace_seconds: int | None = None,
    ) -> list[SettlementItem]:
        """Re-drive settlement for entitlements whose financial effects are missing.

        The default pass covers flagged orders plus unflagged unsettled orders
        older than the grace period. ``flagged_only`` restricts it to the former.
        """
        if order_id is not None:
            order = self.ledger.get(session, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            order_ids = [order.id]
        else:
            orders = self.ledger.list_unsettled(
                session,
                flagged_only=flagged_only,
                stale_before=self.stale_cutoff(grace_seconds),
            )
            order_ids = [order.id for order in orders]

        results = [SettlementItem(order_id=oid, outcome=self.settle(session, oid)) for oid in order_ids]
        logger.info(
            "Reconciliation pass finished",
            extra={"orders": len(results), "settled": sum(r.outcome == SettlementOutcome.SETTLED for r in results)},
        )
        return results

    # ------------------------------------------------------------------ Refund
    def refund_payment(self, session: Session, payment_intent_id: str) -> RefundResult:
        """Reverse every entitlement created under a refunded payment."""
        if not payment_intent_id:
            raise ValidationError("Payment reference is required")

        order_ids = [order.id for order in self.ledger.find_by_external_reference(session, payment_intent_id)]
        if not order_ids:
            logger.warning("Refund for unknown payment", extra={"payment_intent_id": payment_intent_id})
            return RefundResult(payment_intent_id=payment_intent_id)

        retrying = self._retrying()
        items = [retrying(self._refund_order, session, oid) for oid in order_ids]
        return RefundResult(payment_intent_id=payment_intent_id, items=items)

    def _refund_order(self, session: Session, order_id: str) -> RefundItem:
        try:
            if not self.ledger.mark_refunded(session, order_id):
                session.rollback()
                order = self.ledger.get(session, order_id)
                if order is not None and order.status == OrderStatus.REFUNDED:
                    return RefundItem(order_id=order_id, outcome=RefundOutcome.ALREADY_REFUNDED)
                return RefundItem(order_id=order_id, outcome=RefundOutcome.NOT_REFUNDABLE)

            order = self.ledger.get(session, order_id)
            reversed_cents = 0
            # Only settled entitlements were credited; the sales counter is left as history.
            if order.settled_at is not None:
                reversed_cents, _ = self.calculate_payout(order.amount_cents)
                self.accounts.reverse_sale(session, order.seller_id, reversed_cents)
            session.add(
                AuditLog(
                    actor_user_id=None,
                    action="order_refunded",
                    entity="order",
                    entity_id=order.id,
                    details_json={
                        "payment_intent_id": order.payment_intent_id,
                        "seller_id": order.seller_id,
                        "reversed_cents": reversed_cents,
                    },
                )
            )
            buyer_id, document_id, amount_cents = order.buyer_id, order.document_id, order.amount_cents
            session.commit()
        except Exception:
            session.rollback()
            raise

        log_ledger_event(
            level="info",
            event="entitlement_refunded",
            order_id=order_id,
            buyer_id=buyer_id,
            document_id=document_id,
            amount_cents=amount_cents,
            detail=f"reversed_cents={reversed_cents}",
        )
        return RefundItem(order_id=order_id, outcome=RefundOutcome.REFUNDED, reversed_cents=reversed_cents)

    # ---------------------------------------------------------------- Webhooks
    def process_event(self, session: Session, event: dict[str, Any]) -> EventOutcome:
        """Dispatch a verified gateway event."""
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        data_object = (event.get("data") or {}).get("object") or {}
        if not event_id or not event_type:
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD")

        record_id = self._record_event(session, event_id, event_type, data_object, event)
        if record_id is None:
            logger.info("Event already processed", extra={"event_id": event_id, "event_type": event_type})
            return EventOutcome(event_id=event_id, event_type=event_type, status="duplicate")

        fulfillment: FulfillmentResult | None = None
        refund: RefundResult | None = None
        status = PaymentEventStatus.PROCESSED.value
        try:
            if event_type == "payment_intent.succeeded":
                fulfillment = self._handle_payment_succeeded(session, data_object)
                if fulfillment is not None and fulfillment.retry_required:
                    status = PaymentEventStatus.FAILED.value
            elif event_type == "charge.refunded":
                refund = self._handle_charge_refunded(session, data_object)
            elif event_type == "payment_intent.payment_failed":
                self._handle_payment_failed(session, data_object)
            else:
                logger.info("Unhandled event type", extra={"event_type": event_type})
        except Exception:
            self._finish_event(session, record_id, PaymentEventStatus.FAILED.value)
            raise

        self._finish_event(session, record_id, status)
        return EventOutcome(
            event_id=event_id,
            event_type=event_type,
            status=status,
            fulfillment=fulfillment,
            refund=refund,
        )

    def _record_event(
        self,
        session: Session,
        event_id: str,
        event_type: str,
        data_object: dict[str, Any],
        payload: dict[str, Any],
    ) -> Optional[int]:
        existing = session.query(PaymentEvent).filter(PaymentEvent.event_id == event_id).one_or_none()
        if existing is None:
            existing = PaymentEvent(
                event_id=event_id,
                event_type=event_type,
                payment_intent_id=_payment_reference(event_type, data_object),
                status=PaymentEventStatus.RECEIVED.value,
                payload_json=payload,
            )
            session.add(existing)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.query(PaymentEvent).filter(PaymentEvent.event_id == event_id).one()
        if existing.status == PaymentEventStatus.PROCESSED.value:
            return None
        return existing.id

    def _finish_event(self, session: Session, record_id: int, status: str) -> None:
        try:
            session.query(PaymentEvent).filter(PaymentEvent.id == record_id).update(
                {PaymentEvent.status: status, PaymentEvent.processed_at: utcnow()},
                synchronize_session=False,
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Could not record event status", extra={"record_id": record_id, "status": status})

    def _handle_payment_succeeded(self, session: Session, data_object: dict[str, Any]) -> FulfillmentResult | None:
        intent = PaymentIntentSnapshot.from_stripe(data_object)
        if not intent.id or not intent.buyer_id or not intent.document_ids:
            logger.warning("Invalid payment intent metadata", extra={"payment_intent_id": intent.id})
            return None
        try:
            return self.fulfill_payment(
                session,
                payment_intent_id=intent.id,
                buyer_id=intent.buyer_id,
                document_ids=intent.document_ids,
                currency=intent.currency,
            )
        except NotFoundError:
            logger.warning(
                "Payment succeeded for unknown buyer",
                extra={"payment_intent_id": intent.id, "buyer_id": intent.buyer_id},
            )
            return None

    def _handle_charge_refunded(self, session: Session, charge: dict[str, Any]) -> RefundResult | None:
        payment_intent_id = _payment_reference("charge.refunded", charge)
        if not payment_intent_id:
            logger.warning("Refunded charge without payment intent", extra={"charge_id": charge.get("id")})
            return None
        if charge.get("refunded") is False:
            # Partial refunds leave every entitlement in place; an admin settles them by hand.
            logger.warning(
                "Partial refund received; entitlements left in place",
                extra={"payment_intent_id": payment_intent_id, "charge_id": charge.get("id")},
            )
            log_ledger_event(
                level="warning",
                event="partial_refund_ignored",
                payment_intent_id=payment_intent_id,
                amount_cents=charge.get("amount_refunded"),
            )
            session.add(
                AuditLog(
                    actor_user_id=None,
                    action="partial_refund_ignored",
                    entity="payment",
                    entity_id=payment_intent_id,
                    details_json={
                        "charge_id": charge.get("id"),
                        "amount_cents": charge.get("amount"),
                        "amount_refunded_cents": charge.get("amount_refunded"),
                    },
                )
            )
            session.commit()
            return None
        return self.refund_payment(session, payment_intent_id)

    def _handle_payment_failed(self, session: Session, data_object: dict[str, Any]) -> None:
        intent = PaymentIntentSnapshot.from_stripe(data_object)
        error = data_object.get("last_payment_error") or {}
        logger.warning(
            "Payment failed",
            extra={"payment_intent_id": intent.id, "buyer_id": intent.buyer_id},
        )
        log_ledger_event(
            level="warning",
            event="payment_failed",
            payment_intent_id=intent.id,
            buyer_id=intent.buyer_id,
            detail=error.get("message") if isinstance(error, dict) else None,
        )
        session.add(
            AuditLog(
                actor_user_id=None,
                action="payment_failed",
                entity="payment_intent",
                entity_id=intent.id[:64],
                details_json={"buyer_id": intent.buyer_id, "document_ids": intent.document_ids},
            )
        )
        session.commit()


def _payment_reference(event_type: str, data_object: dict[str, Any]) -> Optional[str]:
    if event_type.startswith("payment_intent."):
        return data_object.get("id")
    reference = data_object.get("payment_intent")
    if isinstance(reference, dict):
        return reference.get("id")
    return reference


checkout_service = CheckoutService()

__all__ = [
    "CheckoutHandle",
    "CheckoutService",
    "EventOutcome",
    "FulfillmentItem",
    "FulfillmentOutcome",
    "FulfillmentResult",
    "RefundItem",
    "RefundOutcome",
    "RefundResult",
    "SettlementItem",
    "SettlementOutcome",
    "checkout_service",
]
