"""Cart endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_session
from ..errors import ConflictError, NotFoundError
from ..models import User
from ..schemas.orders import CartAddRequest, CartItemResponse, CartRemoveRequest, CartResponse
from ..services.auth_service import get_current_user
from ..services.catalog_service import cart_store, catalog_store, is_purchasable
from ..services.entitlement_service import entitlement_ledger


router = APIRouter(prefix="/api/cart", tags=["cart"])


def _cart_response(session: Session, user: User) -> CartResponse:
    items = cart_store.list_items(session, user.id)
    total = sum(item.document.price_cents for item in items if item.document is not None)
    return CartResponse(items=[CartItemResponse.model_validate(item) for item in items], total_cents=total)


@router.get("", response_model=CartResponse)
def get_cart(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    return _cart_response(session, user)


@router.post("", response_model=CartResponse)
def add_to_cart(
    payload: CartAddRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    document = catalog_store.get_document(session, payload.document_id)
    if not is_purchasable(document):
        raise NotFoundError("Document not found", code="DOCUMENT_NOT_FOUND")
    if entitlement_ledger.find_completed(session, user.id, document.id):
        raise ConflictError("Document already purchased", code="ALREADY_PURCHASED")
    cart_store.add_item(session, user.id, document)
    session.commit()
    return _cart_response(session, user)


@router.delete("", response_model=CartResponse)
def remove_from_cart(
    payload: CartRemoveRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    cart_store.remove_items(session, user.id, payload.document_ids)
    return _cart_response(session, user)
