"""
Stripe Checkout and Customer Portal routes.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.exceptions import ConfigurationError
from app.db.session import get_db
from app.dependencies.auth import AuthenticatedUser, get_current_user
from app.schemas.billing import CheckoutSessionResponse, PortalSessionRequest, PortalSessionResponse
from app.services import billing

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_configured(e: ConfigurationError) -> HTTPException:
    logger.error("Billing is not configured: %s", e)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Billing is not configured"
    )


@router.post("/checkout", response_model=CheckoutSessionResponse)
def create_checkout_session(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a Stripe Checkout Session for the premium plan and return its URL."""
    try:
        session = billing.create_checkout_session(db, user.id, email=user.email)
    except ConfigurationError as e:
        raise _not_configured(e)
    except billing.BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return CheckoutSessionResponse(checkout_url=session.url, session_id=session.id)


@router.post("/portal", response_model=PortalSessionResponse)
def create_portal_session(
    body: Optional[PortalSessionRequest] = Body(None),
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Open the Stripe Customer Portal so the user can manage or cancel billing."""
    return_url = body.return_url if body else None
    try:
        session = billing.create_portal_session(db, user.id, return_url=return_url)
    except ConfigurationError as e:
        raise _not_configured(e)
    except billing.BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return PortalSessionResponse(url=session.url)
