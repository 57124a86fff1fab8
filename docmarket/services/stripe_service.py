"""Integration helpers for interacting with Stripe."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

import stripe

from ..config import get_settings
from ..errors import NotFoundError, UpstreamFailureError, ValidationError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _decode_document_ids(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(item) for item in raw]
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Unreadable document_ids metadata", extra={"raw": raw})
        return []
    if not isinstance(decoded, list):
        return []
    return [str(item) for item in decoded]


@dataclass(frozen=True)
class PaymentIntentSnapshot:
    """The fields of a payment intent the checkout flow relies on."""

    id: str
    status: str
    amount_cents: int
    currency: str
    buyer_id: str | None
    document_ids: List[str] = field(default_factory=list)
    client_secret: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED

    @classmethod
    def from_stripe(cls, intent: Any) -> "PaymentIntentSnapshot":
        metadata = _field(intent, "metadata", {})
        return cls(
            id=str(_field(intent, "id", "")),
            status=str(_field(intent, "status", "")),
            amount_cents=int(_field(intent, "amount", 0)),
            currency=str(_field(intent, "currency", "usd")),
            buyer_id=_field(metadata, "buyer_id"),
            document_ids=_decode_document_ids(_field(metadata, "document_ids")),
            client_secret=_field(intent, "client_secret"),
        )


class StripeService:
    """Wrapper around Stripe SDK operations used by the backend."""

    def __init__(self) -> None:
        self.settings = get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        if self.settings.stripe_api_base:
            stripe.api_base = self.settings.stripe_api_base

    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        buyer_id: str,
        document_ids: List[str],
    ) -> PaymentIntentSnapshot:
        """Create a payment intent carrying the buyer and documents as metadata."""
        metadata: Dict[str, str] = {
            "buyer_id": buyer_id,
            "document_ids": json.dumps(document_ids, separators=(",", ":")),
        }
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            raise UpstreamFailureError(f"Stripe error: {message}") from exc
        return PaymentIntentSnapshot.from_stripe(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentSnapshot:
        """Fetch the authoritative status of a payment intent."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND") from exc
            raise UpstreamFailureError(f"Stripe error: {exc}") from exc
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            raise UpstreamFailureError(f"Stripe error: {message}") from exc
        return PaymentIntentSnapshot.from_stripe(intent)

    def parse_event(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """Verify the webhook signature and decode the event.

        Events are never trusted without a valid signature; a missing signing
        secret is treated as a verification failure.
        """
        webhook_secret = self.settings.stripe_webhook_secret
        if not webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise ValidationError("Webhook signature cannot be verified", code="INVALID_SIGNATURE")
        if not signature:
            raise ValidationError("Missing stripe-signature header", code="INVALID_SIGNATURE")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD") from exc

        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                webhook_secret,
                self.settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise ValidationError("Invalid webhook signature", code="INVALID_SIGNATURE") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise ValidationError("Invalid payload", code="INVALID_PAYLOAD")
        return event


__all__ = ["PaymentIntentSnapshot", "StripeService", "SUCCEEDED"]
