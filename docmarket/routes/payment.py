"""Checkout endpoints: open a payment intent and confirm it."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_session
from ..models import User
from ..schemas.orders import (
    ConfirmRequest,
    ConfirmResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    FulfillmentItemResponse,
    OrderResponse,
    PaymentConfigResponse,
)
from ..services.auth_service import get_current_user
from ..services.checkout_service import checkout_service


router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.post("/create-intent", response_model=CreateIntentResponse)
def create_intent(
    payload: CreateIntentRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    handle = checkout_service.create_checkout(session, user, payload.document_ids)
    return CreateIntentResponse(
        client_secret=handle.client_secret,
        payment_intent_id=handle.payment_intent_id,
        amount_cents=handle.amount_cents,
        currency=handle.currency,
        document_ids=handle.document_ids,
    )


@router.post("/confirm", response_model=ConfirmResponse)
def confirm_payment(
    payload: ConfirmRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    result = checkout_service.confirm_checkout(session, user, payload.payment_intent_id)
    orders = [checkout_service.ledger.get(session, order_id) for order_id in result.order_ids]
    return ConfirmResponse(
        payment_intent_id=result.payment_intent_id,
        items=[FulfillmentItemResponse.model_validate(item) for item in result.items],
        orders=[OrderResponse.model_validate(order) for order in orders if order is not None],
    )


@router.get("/config", response_model=PaymentConfigResponse)
def payment_config():
    settings = get_settings()
    return PaymentConfigResponse(
        publishable_key=settings.stripe_publishable_key,
        currency=settings.currency,
    )
