"""
Stripe webhook reconciliation.

Verified events are parsed into a closed set of event variants; anything the
service does not act on becomes IgnoredEvent and is acknowledged without
mutation so Stripe stops retrying it. Every mutation is an upsert or update
keyed by user_id (or by the unique stripe_subscription_id), which makes
redelivery of the same event safe without tracking event ids.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import stripe
from sqlalchemy.orm import Session

from app.core.exceptions import WebhookPayloadError, WebhookSignatureError
from app.models.subscription import SubscriptionStatus, SubscriptionTier
from app.services.subscription_store import (
    get_subscription_by_stripe_subscription_id,
    update_subscription_fields,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

# Checkout sessions and subscriptions are created with this metadata key;
# "user_id" is accepted for sessions created by older clients.
METADATA_USER_KEYS = ("supabase_user_id", "user_id")

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: Optional[str]
    user_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: Optional[str]
    user_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: Optional[str]
    user_id: Optional[str]
    subscription_id: Optional[str]
    provider_status: Optional[str]


@dataclass(frozen=True)
class PaymentFailed:
    event_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: Optional[str]
    event_type: str


WebhookEvent = Union[CheckoutCompleted, SubscriptionDeleted, SubscriptionUpdated, PaymentFailed, IgnoredEvent]


@dataclass(frozen=True)
class ReconcileOutcome:
    event_type: str
    action: str  # upgraded | downgraded | status_updated | logged | skipped | ignored
    user_id: Optional[str] = None


def verify_and_parse(payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw body, then parse it.
    Nothing is parsed before the signature checks out.
    """
    if not signature:
        raise WebhookSignatureError("Missing stripe signature")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(
            body, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e)) from e

    try:
        data = json.loads(body)
    except ValueError as e:
        raise WebhookPayloadError("Webhook body is not valid JSON") from e

    if not isinstance(data, dict) or not data.get("type"):
        raise WebhookPayloadError("Webhook body is not a Stripe event")
    return data


def _metadata_user_id(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    for key in METADATA_USER_KEYS:
        value = metadata.get(key)
        if value and str(value).strip():
            return str(value).strip()
    return None


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields like `customer` are ids unless the event was expanded."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def parse_event(data: Dict[str, Any]) -> WebhookEvent:
    event_id = data.get("id")
    event_type = data.get("type") or ""
    obj = (data.get("data") or {}).get("object") or {}

    if event_type == EVENT_CHECKOUT_COMPLETED:
        return CheckoutCompleted(
            event_id=event_id,
            user_id=_metadata_user_id(obj),
            customer_id=_object_id(obj.get("customer")),
            subscription_id=_object_id(obj.get("subscription")),
        )
    if event_type == EVENT_SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            user_id=_metadata_user_id(obj),
            subscription_id=_object_id(obj.get("id")),
        )
    if event_type == EVENT_SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(
            event_id=event_id,
            user_id=_metadata_user_id(obj),
            subscription_id=_object_id(obj.get("id")),
            provider_status=obj.get("status"),
        )
    if event_type == EVENT_PAYMENT_FAILED:
        return PaymentFailed(
            event_id=event_id,
            subscription_id=_invoice_subscription_id(obj),
        )
    return IgnoredEvent(event_id=event_id, event_type=event_type)


def map_provider_status(provider_status: Optional[str]) -> str:
    if provider_status == "active":
        return SubscriptionStatus.ACTIVE.value
    if provider_status == "canceled":
        return SubscriptionStatus.CANCELLED.value
    return SubscriptionStatus.EXPIRED.value


def _resolve_user_id(db: Session, user_id: Optional[str], subscription_id: Optional[str]) -> Optional[str]:
    if user_id:
        return user_id
    row = get_subscription_by_stripe_subscription_id(db, subscription_id)
    return row.user_id if row else None


def _handle_checkout_completed(db: Session, event: CheckoutCompleted) -> ReconcileOutcome:
    if not event.user_id:
        logger.warning("Checkout %s has no user id in metadata; cannot attribute it", event.event_id)
        return ReconcileOutcome(EVENT_CHECKOUT_COMPLETED, "skipped")

    upsert_subscription(db, event.user_id, {
        "tier": SubscriptionTier.PREMIUM.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "expires_at": None,
        "stripe_customer_id": event.customer_id,
        "stripe_subscription_id": event.subscription_id,
    })
    logger.info("User %s upgraded to premium (event %s)", event.user_id, event.event_id)
    return ReconcileOutcome(EVENT_CHECKOUT_COMPLETED, "upgraded", event.user_id)


def _handle_subscription_deleted(db: Session, event: SubscriptionDeleted) -> ReconcileOutcome:
    user_id = _resolve_user_id(db, event.user_id, event.subscription_id)
    if not user_id:
        logger.warning(
            "Subscription %s deleted but no user could be resolved (event %s)",
            event.subscription_id, event.event_id,
        )
        return ReconcileOutcome(EVENT_SUBSCRIPTION_DELETED, "skipped")

    updated = update_subscription_fields(db, user_id, {
        "tier": SubscriptionTier.FREE.value,
        "status": SubscriptionStatus.CANCELLED.value,
    }, stripe_subscription_id=event.subscription_id)
    if not updated:
        logger.warning(
            "No subscription row for user %s bound to %s to cancel (event %s)",
            user_id, event.subscription_id, event.event_id,
        )
        return ReconcileOutcome(EVENT_SUBSCRIPTION_DELETED, "skipped", user_id)

    logger.info("User %s downgraded to free (event %s)", user_id, event.event_id)
    return ReconcileOutcome(EVENT_SUBSCRIPTION_DELETED, "downgraded", user_id)


def _handle_subscription_updated(db: Session, event: SubscriptionUpdated) -> ReconcileOutcome:
    user_id = _resolve_user_id(db, event.user_id, event.subscription_id)
    if not user_id:
        logger.warning(
            "Subscription %s updated but no user could be resolved (event %s)",
            event.subscription_id, event.event_id,
        )
        return ReconcileOutcome(EVENT_SUBSCRIPTION_UPDATED, "skipped")

    status = map_provider_status(event.provider_status)
    # Status only; the tier is owned by checkout and deletion events
    updated = update_subscription_fields(
        db, user_id, {"status": status}, stripe_subscription_id=event.subscription_id
    )
    if not updated:
        logger.warning(
            "No subscription row for user %s bound to %s to update (event %s)",
            user_id, event.subscription_id, event.event_id,
        )
        return ReconcileOutcome(EVENT_SUBSCRIPTION_UPDATED, "skipped", user_id)

    logger.info(
        "Subscription updated for user %s: %s -> %s (event %s)",
        user_id, event.provider_status, status, event.event_id,
    )
    return ReconcileOutcome(EVENT_SUBSCRIPTION_UPDATED, "status_updated", user_id)


def _handle_payment_failed(db: Session, event: PaymentFailed) -> ReconcileOutcome:
    # TODO: dunning (notify the user, mark past-due) once billing emails exist
    row = get_subscription_by_stripe_subscription_id(db, event.subscription_id)
    user_id = row.user_id if row else None
    if user_id:
        logger.warning("Payment failed for user %s (subscription %s)", user_id, event.subscription_id)
    else:
        logger.warning("Payment failed for unknown subscription %s (event %s)", event.subscription_id, event.event_id)
    return ReconcileOutcome(EVENT_PAYMENT_FAILED, "logged", user_id)


def _handle_ignored(db: Session, event: IgnoredEvent) -> ReconcileOutcome:
    logger.info("Unhandled event type: %s (event %s)", event.event_type, event.event_id)
    return ReconcileOutcome(event.event_type, "ignored")


_HANDLERS: Dict[type, Callable[[Session, Any], ReconcileOutcome]] = {
    CheckoutCompleted: _handle_checkout_completed,
    SubscriptionDeleted: _handle_subscription_deleted,
    SubscriptionUpdated: _handle_subscription_updated,
    PaymentFailed: _handle_payment_failed,
    IgnoredEvent: _handle_ignored,
}


def reconcile_event(db: Session, event: WebhookEvent) -> ReconcileOutcome:
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"No reconciler registered for {type(event).__name__}")
    return handler(db, event)
