"""Billing Routes - Subscription checkout and self-service.

Endpoints:
- POST /api/create-checkout - Create checkout session for a paid plan
- POST /api/create-portal-session - Create Stripe billing portal session
- GET /api/plans - Plan catalog for the pricing page

Plan changes are never written here: the profile only changes when the
Stripe webhook confirms the payment.
"""
from fastapi import APIRouter, HTTPException, status, Depends
import stripe
import logging

from models import CheckoutRequest, PortalRequest, SessionResponse
from services.analytics import ANALYTICS_EVENTS
from services.plan_registry import plan_registry
from middleware import get_stripe_gateway, get_profile_store, get_analytics, get_rate_limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["billing"])

CHECKOUT_MAX_ATTEMPTS = 10
PORTAL_MAX_ATTEMPTS = 10
RATE_LIMIT_WINDOW_SECONDS = 60


async def _enforce_rate_limit(limiter, key: str, max_attempts: int) -> None:
    allowed, error_message = await limiter.check_rate_limit(key, max_attempts, RATE_LIMIT_WINDOW_SECONDS)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=error_message
        )


@router.post("/create-checkout", response_model=SessionResponse)
async def create_checkout(
    body: CheckoutRequest,
    gateway=Depends(get_stripe_gateway),
    analytics=Depends(get_analytics),
    limiter=Depends(get_rate_limiter),
):
    """
    Create Stripe checkout session for a subscription.

    The session carries the user id (client_reference_id + metadata.userId)
    so checkout.session.completed can find the profile.
    """
    if not body.price_id or not body.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Price ID and User ID required"
        )

    plan_type = plan_registry.map_price_id_to_plan(body.price_id)
    if plan_type is None:
        logger.warning(f"Checkout rejected for user {body.user_id}: unknown price {body.price_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid price ID: {body.price_id}"
        )

    await _enforce_rate_limit(limiter, f"checkout:{body.user_id}", CHECKOUT_MAX_ATTEMPTS)

    try:
        session = await gateway.create_checkout_session(
            user_id=body.user_id,
            price_id=body.price_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except (stripe.StripeError, ValueError) as e:
        logger.error(f"Checkout session creation failed for user {body.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_stripe_error_message(e)
        )

    analytics.record(body.user_id, ANALYTICS_EVENTS["CHECKOUT_STARTED"], {
        "planType": plan_type.value,
        "priceId": body.price_id,
    })
    return session


@router.post("/create-portal-session", response_model=SessionResponse)
async def create_portal_session(
    body: PortalRequest,
    gateway=Depends(get_stripe_gateway),
    profiles=Depends(get_profile_store),
    analytics=Depends(get_analytics),
    limiter=Depends(get_rate_limiter),
):
    """Create Stripe billing portal session (manage card, invoices, cancellation)."""
    if not body.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User ID required"
        )

    profile = await profiles.find_by_user_id(body.user_id)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )

    customer_id = profile.get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Stripe subscription found. Subscribe to a paid plan first."
        )

    await _enforce_rate_limit(limiter, f"portal:{body.user_id}", PORTAL_MAX_ATTEMPTS)

    try:
        session = await gateway.create_portal_session(customer_id)
    except (stripe.StripeError, ValueError) as e:
        logger.error(f"Portal session creation failed for user {body.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_stripe_error_message(e)
        )

    analytics.record(body.user_id, ANALYTICS_EVENTS["PORTAL_OPENED"], {})
    return session


@router.get("/plans")
async def list_plans():
    """Get all plans, cheapest first."""
    return {"plans": plan_registry.get_all_plans()}


def _stripe_error_message(error: Exception) -> str:
    message = getattr(error, "user_message", None) or str(error)
    return message or "Error creating the session"
