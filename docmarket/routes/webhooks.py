"""Payment gateway webhook receiver."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_session
from ..services.checkout_service import checkout_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, session: Session = Depends(get_session)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    event = checkout_service.gateway.parse_event(payload, signature)

    outcome = await run_in_threadpool(checkout_service.process_event, session, event)
    body = {"received": True, "status": outcome.status}
    if outcome.retry_required:
        logger.warning(
            "Webhook processed with failures; requesting redelivery",
            extra={"event_id": outcome.event_id},
        )
        return JSONResponse(status_code=500, content={**body, "received": False})
    return body
