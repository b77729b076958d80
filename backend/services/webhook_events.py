"""Typed Stripe webhook events.

A verified stripe.Event is turned into exactly one of five variants, each
carrying only the fields its handler reads. Anything a handler needs that the
payload cannot provide is rejected here, before any profile is touched.

Supported events:
- checkout.session.completed
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed
- invoice.payment_succeeded
"""
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel
from services.downgrade_policy import normalize_attempt_count


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

SUPPORTED_WEBHOOK_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
})


# ============================================================================
# Errors
# ============================================================================

class WebhookError(Exception):
    """Base for errors translated into an HTTP response by the webhook boundary."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class WebhookAuthError(WebhookError):
    status_code = 400


class MalformedEventError(WebhookError):
    status_code = 400


class ProfileNotFoundError(WebhookError):
    status_code = 404


class PersistenceError(WebhookError):
    status_code = 500


# ============================================================================
# Event variants
# ============================================================================

class CheckoutCompleted(BaseModel):
    type: Literal["checkout.session.completed"] = CHECKOUT_COMPLETED
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: str
    subscription_id: str
    customer_id: Optional[str] = None


class SubscriptionUpdated(BaseModel):
    type: Literal["customer.subscription.updated"] = SUBSCRIPTION_UPDATED
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    price_id: Optional[str] = None


class SubscriptionDeleted(BaseModel):
    type: Literal["customer.subscription.deleted"] = SUBSCRIPTION_DELETED
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None


class InvoicePaymentFailed(BaseModel):
    type: Literal["invoice.payment_failed"] = INVOICE_PAYMENT_FAILED
    event_id: Optional[str] = None
    invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    attempt_count: int = 0
    amount_due: Optional[int] = None


class InvoicePaymentSucceeded(BaseModel):
    type: Literal["invoice.payment_succeeded"] = INVOICE_PAYMENT_SUCCEEDED
    event_id: Optional[str] = None
    invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_paid: Optional[int] = None


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
]


# ============================================================================
# Parsing
# ============================================================================

def is_supported_webhook_event(event_type: Any) -> bool:
    return isinstance(event_type, str) and event_type in SUPPORTED_WEBHOOK_EVENTS


def parse_webhook_event(event: Dict[str, Any]) -> WebhookEvent:
    """
    Build the typed variant for a verified event.

    Raises:
        MalformedEventError: unsupported type, or checkout without user/subscription.
    """
    event_type = event.get("type")
    event_id = event.get("id")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        user_id = obj.get("client_reference_id") or metadata.get("userId")
        if not user_id:
            raise MalformedEventError("No userId")
        subscription_id = _stripe_id(obj.get("subscription"))
        if not subscription_id:
            raise MalformedEventError("No subscription")
        return CheckoutCompleted(
            event_id=event_id,
            session_id=obj.get("id"),
            user_id=user_id,
            subscription_id=subscription_id,
            customer_id=_stripe_id(obj.get("customer")),
        )

    if event_type == SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(
            event_id=event_id,
            subscription_id=obj.get("id"),
            customer_id=_stripe_id(obj.get("customer")),
            status=obj.get("status"),
            price_id=first_price_id(obj),
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=obj.get("id"),
            customer_id=_stripe_id(obj.get("customer")),
        )

    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            event_id=event_id,
            invoice_id=obj.get("id"),
            customer_id=_stripe_id(obj.get("customer")),
            attempt_count=normalize_attempt_count(obj.get("attempt_count")),
            amount_due=obj.get("amount_due"),
        )

    if event_type == INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaymentSucceeded(
            event_id=event_id,
            invoice_id=obj.get("id"),
            customer_id=_stripe_id(obj.get("customer")),
            amount_paid=obj.get("amount_paid"),
        )

    raise MalformedEventError(f"Unsupported event type: {event_type}")


def first_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    """Price ID of the first subscription item (items.data[0].price.id)."""
    item = first_price(subscription)
    return item.get("id") if item else None


def first_price(subscription: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # subscription["items"], not .items: Stripe objects are dicts
    items = (subscription or {}).get("items") or {}
    data = items.get("data") or []
    if not data:
        return None
    price = data[0].get("price")
    if isinstance(price, str):
        return {"id": price}
    return price or None


def _stripe_id(value: Any) -> Optional[str]:
    """Stripe references are either an ID string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None
