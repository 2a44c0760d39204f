"""
Stripe Checkout and Customer Portal sessions.

Checkout sessions carry the Supabase user id in both the session metadata and
subscription_data.metadata; the webhook reconciler reads it back from either
object to attribute checkout and subscription events.
"""
import logging
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from app.core import config
from app.core.config import require_setting
from app.services.subscription_store import get_subscription

logger = logging.getLogger(__name__)

NO_STRIPE_SUBSCRIPTION_MESSAGE = (
    "No Stripe subscription found. Your premium access may be from a promo code."
)


class BillingError(Exception):
    """A billing request that cannot be served; status_code maps onto the HTTP response."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _configure_stripe() -> None:
    stripe.api_key = require_setting("STRIPE_SECRET_KEY")


def create_checkout_session(db: Session, user_id: str, email: Optional[str] = None) -> stripe.checkout.Session:
    """Start a premium subscription checkout for the user."""
    _configure_stripe()
    price_id = require_setting("STRIPE_PRICE_ID_PREMIUM")

    current = get_subscription(db, user_id)
    if current.is_premium:
        raise BillingError("You already have an active premium subscription")

    metadata = {"supabase_user_id": user_id}
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{config.FRONTEND_URL}/settings/subscription?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.FRONTEND_URL}/settings/subscription?canceled=true",
        "client_reference_id": user_id,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }
    # Reuse the customer from an earlier (cancelled) subscription when we have one
    if current.stripe_customer_id:
        params["customer"] = current.stripe_customer_id
    elif email:
        params["customer_email"] = email

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error("Stripe error creating checkout session for user %s: %s", user_id, e)
        raise BillingError("Failed to create checkout session", status_code=502) from e

    logger.info("Created Stripe checkout session %s for user %s", session.id, user_id)
    return session


def create_portal_session(db: Session, user_id: str, return_url: Optional[str] = None) -> stripe.billing_portal.Session:
    """Open the Stripe Customer Portal for a user with a Stripe-backed subscription."""
    _configure_stripe()

    current = get_subscription(db, user_id)
    if not current.stripe_customer_id:
        raise BillingError(NO_STRIPE_SUBSCRIPTION_MESSAGE)

    try:
        session = stripe.billing_portal.Session.create(
            customer=current.stripe_customer_id,
            return_url=return_url or f"{config.FRONTEND_URL}/settings/subscription",
        )
    except stripe.StripeError as e:
        logger.error("Stripe error creating portal session for user %s: %s", user_id, e)
        raise BillingError("Failed to create portal session", status_code=502) from e

    return session
