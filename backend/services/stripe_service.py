"""Stripe Service - the only module that talks to Stripe.

This service handles:
- Webhook signature verification (delegated to stripe.Webhook.construct_event)
- Retrieving live subscription detail for plan derivation
- Creating checkout sessions for new subscriptions
- Billing portal access

Key Principles:
- The signature scheme is Stripe's; nothing here reimplements the HMAC
- Calls to the Stripe API are awaited (async variants of the SDK methods)
- Metadata always carries userId so the webhook can find the profile
"""
import stripe
import json
import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from services.plan_registry import plan_registry, FREE_PLAN

logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "http://localhost:3000"
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0


@dataclass
class BillingSettings:
    """Billing configuration read from the environment. Price ids are read by the plan registry."""
    stripe_secret_key: str = ""
    webhook_secret: str = ""
    app_url: str = DEFAULT_APP_URL
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "BillingSettings":
        # prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY
        secret_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
        try:
            timeout = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS") or DEFAULT_WEBHOOK_TIMEOUT_SECONDS)
        except ValueError:
            logger.warning("WEBHOOK_TIMEOUT_SECONDS is not a number - using %s", DEFAULT_WEBHOOK_TIMEOUT_SECONDS)
            timeout = DEFAULT_WEBHOOK_TIMEOUT_SECONDS
        return cls(
            stripe_secret_key=secret_key,
            webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
            app_url=(os.getenv("APP_URL") or DEFAULT_APP_URL).strip().rstrip("/"),
            webhook_timeout_seconds=timeout,
        )

    @property
    def stripe_mode(self) -> str:
        if self.stripe_secret_key.startswith("sk_live_"):
            return "live"
        if self.stripe_secret_key.startswith("sk_test_"):
            return "test"
        return "unknown"


class StripeGateway:
    """Stripe API operations used by the webhook and billing routes."""

    def __init__(self, settings: BillingSettings):
        self.settings = settings

    def init(self) -> None:
        """Log Stripe configuration (mode and which prices are set, never secrets)."""
        if not self.settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and webhooks will fail.")
        else:
            logger.info("STRIPE_MODE = %s (from Stripe key prefix)", self.settings.stripe_mode)
        if not self.settings.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set. Every webhook will be rejected.")
        # Price ids belong to the plan registry
        for plan in plan_registry.get_all_plans():
            if plan["id"] != FREE_PLAN.value:
                logger.info("Stripe price IDs plan=%s price_id=%s", plan["id"], plan["price_id"] or "(missing)")

    async def shutdown(self) -> None:
        logger.info("Stripe gateway shut down")

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_event_signature(self, payload: bytes, signature: str, secret: Optional[str] = None):
        """
        Verify a webhook payload and return the event as a plain dict.

        Raises:
            stripe.SignatureVerificationError: signature does not match
            ValueError: payload is not valid JSON
        """
        webhook_secret = self.settings.webhook_secret if secret is None else secret
        stripe.Webhook.construct_event(payload, signature, webhook_secret)
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch the live subscription (items.data[].price) from Stripe."""
        return await stripe.Subscription.retrieve_async(
            subscription_id,
            api_key=self._api_key(),
            expand=["items.data.price"],
        )

    # -------------------------------------------------------------------------
    # Checkout / Portal
    # -------------------------------------------------------------------------

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create Stripe checkout session for a new subscription.

        Returns:
            Dict with url and session_id
        """
        base = self.settings.app_url
        session = await stripe.checkout.Session.create_async(
            api_key=self._api_key(),
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url or f"{base}/abonnement?success=true",
            cancel_url=cancel_url or f"{base}/abonnement?canceled=true",
            client_reference_id=user_id,
            metadata={"userId": user_id},  # MANDATORY for webhook
        )
        logger.info(f"Checkout session created for user {user_id}: {session.id}")
        return {"url": session.url, "session_id": session.id}

    async def create_portal_session(self, customer_id: str) -> Dict[str, Any]:
        portal_session = await stripe.billing_portal.Session.create_async(
            api_key=self._api_key(),
            customer=customer_id,
            return_url=f"{self.settings.app_url}/abonnement",
        )
        logger.info(f"Billing portal session created for customer {customer_id}")
        return {"url": portal_session.url, "session_id": portal_session.id}

    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")
        return self.settings.stripe_secret_key
