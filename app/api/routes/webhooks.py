"""
Stripe webhook endpoint.

400: missing or invalid signature, or a body that is not a Stripe event.
200: any verified event, including types we ignore.
500: webhook secrets not configured, or reconciliation failed (Stripe retries).
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import require_setting
from app.core.exceptions import ConfigurationError, WebhookPayloadError, WebhookSignatureError
from app.db.session import get_db
from app.services.stripe_webhook import parse_event, reconcile_event, verify_and_parse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        require_setting("STRIPE_SECRET_KEY")
        webhook_secret = require_setting("STRIPE_WEBHOOK_SECRET")
    except ConfigurationError as e:
        logger.error("Stripe webhook received but not configured: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook not configured"
        )

    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        data = verify_and_parse(payload, signature, webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe signature" if not signature else "Invalid signature"
        )
    except WebhookPayloadError as e:
        logger.warning("Rejected Stripe webhook payload: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )

    event = parse_event(data)
    # Sync session: keep its blocking I/O off the event loop
    try:
        outcome = await run_in_threadpool(reconcile_event, db, event)
    except Exception:
        await run_in_threadpool(db.rollback)
        logger.exception("Stripe webhook handler failed for event %s (%s)", data.get("id"), data.get("type"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook handler failed"
        )

    return {"received": True, "type": outcome.event_type, "action": outcome.action}
