"""Administrative endpoints for settlement reconciliation."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_session
from ..models import AuditLog, User
from ..schemas.orders import ReconciliationOrder, ReconciliationRunRequest, SettlementItemResponse
from ..services.auth_service import require_admin
from ..services.checkout_service import checkout_service
from ..services.entitlement_service import entitlement_ledger


router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/reconciliation")
def reconciliation_queue(session: Session = Depends(get_session), user: User = Depends(require_admin)) -> dict:
    orders = entitlement_ledger.list_unsettled(session, stale_before=checkout_service.stale_cutoff())
    return {
        "success": True,
        "items": [ReconciliationOrder.model_validate(order).model_dump(mode="json") for order in orders],
    }


@router.post("/reconciliation/run")
def run_reconciliation(
    payload: ReconciliationRunRequest,
    session: Session = Depends(get_session),
    user: User = Depends(require_admin),
) -> dict:
    results = checkout_service.reconcile(
        session,
        order_id=payload.order_id,
        flagged_only=payload.flagged_only,
        grace_seconds=payload.grace_seconds,
    )
    session.add(
        AuditLog(
            actor_user_id=user.id,
            action="admin_reconcile",
            entity="order",
            entity_id=payload.order_id or "*",
            details_json={item.order_id: item.outcome.value for item in results},
        )
    )
    session.commit()
    return {
        "success": True,
        "items": [SettlementItemResponse.model_validate(item).model_dump(mode="json") for item in results],
    }
