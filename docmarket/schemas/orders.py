"""Pydantic schemas for checkout, order, cart and reconciliation endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import DocumentStatus, OrderStatus
from ..services.checkout_service import FulfillmentOutcome, SettlementOutcome


class CreateIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: List[str] = Field(..., alias="documentIds")


class CreateIntentResponse(BaseModel):
    success: bool = True
    client_secret: str | None
    payment_intent_id: str
    amount_cents: int
    currency: str
    document_ids: List[str]


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(..., alias="paymentIntentId")


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(..., alias="documentId")
    payment_intent_id: str = Field(..., alias="paymentIntentId")


class PaymentConfigResponse(BaseModel):
    publishable_key: str
    currency: str


class DocumentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    price_cents: int
    status: DocumentStatus
    sales_count: int


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    seller_id: str
    document_id: str
    amount_cents: int
    currency: str
    payment_intent_id: str
    status: OrderStatus
    download_count: int
    max_downloads: int
    downloads_remaining: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    document: Optional[DocumentSummary] = None


class FulfillmentItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: str
    outcome: FulfillmentOutcome
    order_id: str | None = None
    error_code: str | None = None


class ConfirmResponse(BaseModel):
    success: bool = True
    payment_intent_id: str
    items: List[FulfillmentItemResponse]
    orders: List[OrderResponse]


class OrderListResponse(BaseModel):
    success: bool = True
    orders: List[OrderResponse]


class SellerStatsResponse(BaseModel):
    success: bool = True
    total_sales: int
    total_revenue_cents: int
    total_downloads: int
    balance_cents: int
    top_documents: List[DocumentSummary]


class CartAddRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(..., alias="documentId")


class CartRemoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_ids: List[str] = Field(..., alias="documentIds")


class CartItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    document_id: str
    created_at: datetime
    document: Optional[DocumentSummary] = None


class CartResponse(BaseModel):
    success: bool = True
    items: List[CartItemResponse]
    total_cents: int


class ReconciliationOrder(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    seller_id: str
    document_id: str
    amount_cents: int
    payment_intent_id: str
    needs_reconciliation: bool
    reconciliation_note: str | None = None
    created_at: datetime


class ReconciliationRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str | None = Field(default=None, alias="orderId")
    flagged_only: bool = Field(default=False, alias="flaggedOnly")
    grace_seconds: int | None = Field(default=None, ge=0, alias="graceSeconds")


class SettlementItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    outcome: SettlementOutcome
