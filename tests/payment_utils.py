from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
import uuid

from sqlalchemy.orm import Session

from docmarket.models import Document, DocumentStatus, User, UserRole
from docmarket.services import object_storage
from docmarket.services.auth_service import auth_service


def create_user(session: Session, email: str, role: UserRole = UserRole.BUYER) -> User:
    user = User(id=str(uuid.uuid4()), email=email, name=email.split("@")[0], role=role)
    session.add(user)
    session.commit()
    return user


def create_document(
    session: Session,
    seller: User,
    *,
    price_cents: int = 1000,
    title: str = "Linear Algebra Notes",
    content: bytes = b"%PDF-1.4 study notes",
    status: DocumentStatus = DocumentStatus.APPROVED,
) -> Document:
    document = Document(
        id=str(uuid.uuid4()),
        seller_id=seller.id,
        title=title,
        file_key=f"documents/{uuid.uuid4()}.pdf",
        file_name=f"{title}.pdf",
        content_type="application/pdf",
        price_cents=price_cents,
        status=status,
    )
    object_storage.save_document_bytes(content, document.file_key)
    session.add(document)
    session.commit()
    return document


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {auth_service.issue_token(user.id)}"}


def sign_payload(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
    ts = int(timestamp if timestamp is not None else time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _event(event_type: str, data_object: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }


def payment_succeeded_event(intent: dict, event_id: str | None = None) -> dict:
    return _event("payment_intent.succeeded", dict(intent, status="succeeded"), event_id)


def payment_failed_event(intent: dict, event_id: str | None = None) -> dict:
    data = dict(intent, status="requires_payment_method")
    data["last_payment_error"] = {"message": "Your card was declined."}
    return _event("payment_intent.payment_failed", data, event_id)


def charge_refunded_event(
    payment_intent_id: str,
    amount_cents: int,
    event_id: str | None = None,
    *,
    amount_refunded_cents: int | None = None,
) -> dict:
    refunded = amount_cents if amount_refunded_cents is None else amount_refunded_cents
    charge = {
        "id": f"ch_{uuid.uuid4().hex[:12]}",
        "object": "charge",
        "amount": amount_cents,
        "amount_refunded": refunded,
        "refunded": refunded >= amount_cents,
        "payment_intent": payment_intent_id,
    }
    return _event("charge.refunded", charge, event_id)


def post_signed_event(client, event: dict, signature: str | None = None):
    payload = json.dumps(event)
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign_payload(payload)
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)
