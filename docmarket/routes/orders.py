"""Order endpoints: listings, seller statistics, single purchase and downloads."""
from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..database import get_session
from ..errors import ForbiddenError, NotFoundError
from ..models import Order, User
from ..schemas.orders import (
    DocumentSummary,
    OrderListResponse,
    OrderResponse,
    PurchaseRequest,
    SellerStatsResponse,
)
from ..services.auth_service import get_current_user
from ..services.checkout_service import checkout_service
from ..services.download_service import download_gate
from ..services.entitlement_service import entitlement_ledger


router = APIRouter(prefix="/api/orders", tags=["orders"])


def _visible_order(session: Session, order_id: str, user: User) -> Order:
    order = entitlement_ledger.get(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if user.id not in (order.buyer_id, order.seller_id):
        raise ForbiddenError("Access denied")
    return order


@router.get("/my-orders", response_model=OrderListResponse)
def my_orders(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    orders = entitlement_ledger.list_for_buyer(session, user.id)
    return OrderListResponse(orders=[OrderResponse.model_validate(order) for order in orders])


@router.get("/seller-orders", response_model=OrderListResponse)
def seller_orders(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    orders = entitlement_ledger.list_for_seller(session, user.id)
    return OrderListResponse(orders=[OrderResponse.model_validate(order) for order in orders])


@router.get("/stats/seller", response_model=SellerStatsResponse)
def seller_stats(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    stats = entitlement_ledger.seller_stats(session, user.id)
    return SellerStatsResponse(
        total_sales=stats.total_sales,
        total_revenue_cents=stats.total_revenue_cents,
        total_downloads=stats.total_downloads,
        balance_cents=user.balance_cents,
        top_documents=[DocumentSummary.model_validate(doc) for doc in stats.top_documents],
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: PurchaseRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    order = checkout_service.purchase_document(session, user, payload.document_id, payload.payment_intent_id)
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    return OrderResponse.model_validate(_visible_order(session, order_id, user))


@router.get("/{order_id}/download")
def download_order(order_id: str, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    grant = download_gate.download(session, order_id, user.id)
    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(grant.file_name)}",
        "X-Downloads-Remaining": str(grant.order.downloads_remaining),
    }
    return StreamingResponse(grant.chunks, media_type=grant.content_type, headers=headers)
