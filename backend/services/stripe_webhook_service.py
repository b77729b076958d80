"""Stripe Webhook Service - subscription state sync for user profiles.

This service reconciles Stripe billing events into the profile record
(plan_type, property_limit, subscription_status, Stripe ids).

Key Principles:
1. Signature verification: no event is dispatched unless Stripe's signature checks out
2. Plan derivation: plan is derived from the subscription price_id; unknown prices -> essentiel
3. Terminal values only: every handler writes absolute field values, so redelivery is safe
4. One boundary: handlers raise, process_webhook translates to a status code + terse error
5. Stripe owns retries: nothing is retried here; a 500 makes Stripe redeliver

Events Handled:
- checkout.session.completed (paid plan activation)
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed (grace period, then downgrade at attempt 3)
- invoice.payment_succeeded (clears payment_failed)

Any other event type is acknowledged with {"received": true, "ignored": true}.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from models import PlanType, SubscriptionStatus
from services.analytics import ANALYTICS_EVENTS
from services.downgrade_policy import decide_outcome
from services.plan_registry import plan_registry, FREE_PLAN
from services.webhook_events import (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    WebhookError,
    WebhookAuthError,
    ProfileNotFoundError,
    first_price,
    first_price_id,
    is_supported_webhook_event,
    parse_webhook_event,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class StripeWebhookService:
    """Verifies, dispatches and reconciles Stripe webhook events."""

    def __init__(
        self,
        gateway,
        profiles,
        analytics,
        ledger=None,
        registry=plan_registry,
        timeout_seconds: float = 10.0,
    ):
        self.gateway = gateway
        self.profiles = profiles
        self.analytics = analytics
        self.ledger = ledger
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self._handlers = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
            INVOICE_PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
        }

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Main webhook entry point, bounded by timeout_seconds.

        Returns:
            WebhookResult with the HTTP status and JSON body for Stripe.
        """
        try:
            return await asyncio.wait_for(
                self._process(payload, signature),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("WEBHOOK_TIMEOUT after %ss - Stripe will redeliver", self.timeout_seconds)
            return WebhookResult(500, {"error": "Webhook processing timed out"})

    async def _process(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        # Step 1: Verify signature
        try:
            event = self._verify(payload, signature)
        except WebhookAuthError as e:
            return WebhookResult(e.status_code, {"error": e.message})

        event_id = event.get("id")
        event_type = event.get("type")
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s", event_id, event_type, event.get("livemode"))

        # Step 2: Dispatch guard
        if not is_supported_webhook_event(event_type):
            logger.info(f"Ignoring unhandled event type: {event_type}")
            return WebhookResult(200, {"received": True, "ignored": True})

        # Step 3: Idempotency check
        if self.ledger is not None:
            if await self.ledger.is_processed(event_id):
                logger.info(f"Event {event_id} already processed - skipping")
                return WebhookResult(200, {"received": True})
            await self.ledger.mark_processing(event_id, event_type)

        # Step 4: Process event
        try:
            parsed = parse_webhook_event(event)
            user_id = await self._handlers[parsed.type](parsed)
        except WebhookError as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s status=%s error=%s",
                event_id, event_type, e.status_code, e.message,
            )
            await self._mark_failed(event_id, e.message)
            return WebhookResult(e.status_code, {"error": e.message})
        except Exception as e:
            logger.exception(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await self._mark_failed(event_id, str(e))
            return WebhookResult(500, {"error": str(e) or e.__class__.__name__})

        if self.ledger is not None:
            await self.ledger.mark_processed(event_id, user_id)
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s", event_id, event_type, user_id)
        return WebhookResult(200, {"received": True})

    def _verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            logger.error("[Webhook] No signature provided")
            raise WebhookAuthError("No signature")
        try:
            return self.gateway.verify_event_signature(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET)", e)
            raise WebhookAuthError("Invalid signature") from e
        except ValueError as e:
            logger.error("Webhook payload could not be parsed for verification: %s", e)
            raise WebhookAuthError("Invalid signature") from e

    async def _mark_failed(self, event_id: Optional[str], error: str) -> None:
        if self.ledger is not None:
            await self.ledger.mark_failed(event_id, error)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_checkout_completed(self, event: CheckoutCompleted) -> str:
        """
        Handle checkout.session.completed - paid plan activation.

        The session does not carry the price, so the live subscription is
        fetched to derive the plan.
        """
        logger.info(
            "HANDLER_START event.type=checkout.session.completed user_id=%s stripe_customer_id=%s subscription_id=%s checkout_session_id=%s",
            event.user_id, event.customer_id, event.subscription_id, event.session_id,
        )
        subscription = await self.gateway.retrieve_subscription(event.subscription_id)
        price = first_price(subscription) or {}
        plan_type = self.registry.get_plan_from_price_id(price.get("id"))

        await self.profiles.update_fields(
            event.user_id,
            {
                "plan_type": plan_type.value,
                "property_limit": self.registry.get_plan_limits(plan_type),
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "stripe_customer_id": event.customer_id,
                "stripe_subscription_id": event.subscription_id,
            },
            upsert=True,
        )

        self.analytics.record(event.user_id, ANALYTICS_EVENTS["PAYMENT_SUCCEEDED"], {
            "planType": plan_type.value,
            "amount": self._price_amount(price, plan_type),
        })
        logger.info(
            "HANDLER_END event.type=checkout.session.completed user_id=%s db_updated=plan_type=%s subscription_status=active",
            event.user_id, plan_type.value,
        )
        return event.user_id

    async def _handle_subscription_updated(self, event: SubscriptionUpdated) -> str:
        """
        Handle customer.subscription.updated.

        Status is stored as Stripe reports it (a plan can change while past_due).
        """
        logger.info(
            "HANDLER_START event.type=customer.subscription.updated stripe_customer_id=%s subscription_id=%s status=%s",
            event.customer_id, event.subscription_id, event.status,
        )
        profile = await self._require_profile(event.customer_id)
        user_id = profile["user_id"]
        old_plan = profile.get("plan_type")

        price_id = event.price_id
        if not price_id and event.subscription_id:
            # Items not included in the payload - fetch expanded subscription from Stripe
            subscription = await self.gateway.retrieve_subscription(event.subscription_id)
            price_id = first_price_id(subscription)
        new_plan = self.registry.get_plan_from_price_id(price_id)

        await self.profiles.update_fields(user_id, {
            "plan_type": new_plan.value,
            "property_limit": self.registry.get_plan_limits(new_plan),
            "subscription_status": event.status,
        })

        if old_plan != new_plan.value:
            logger.info(f"Plan change detected for user {user_id}: {old_plan} -> {new_plan.value}")
            self.analytics.record(user_id, ANALYTICS_EVENTS["PLAN_UPGRADED"], {
                "fromPlan": old_plan,
                "toPlan": new_plan.value,
            })
        logger.info(
            "HANDLER_END event.type=customer.subscription.updated user_id=%s db_updated=plan_type=%s subscription_status=%s",
            user_id, new_plan.value, event.status,
        )
        return user_id

    async def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> str:
        """Handle customer.subscription.deleted - back to the free tier, whatever the previous plan."""
        logger.info(
            "HANDLER_START event.type=customer.subscription.deleted stripe_customer_id=%s subscription_id=%s",
            event.customer_id, event.subscription_id,
        )
        profile = await self._require_profile(event.customer_id)
        user_id = profile["user_id"]
        old_plan = profile.get("plan_type")

        await self.profiles.update_fields(user_id, self._free_tier_fields(SubscriptionStatus.CANCELED))

        self.analytics.record(user_id, ANALYTICS_EVENTS["SUBSCRIPTION_CANCELED"], {"fromPlan": old_plan})
        logger.info(
            "HANDLER_END event.type=customer.subscription.deleted user_id=%s db_updated=plan_type=gratuit subscription_status=canceled",
            user_id,
        )
        return user_id

    async def _handle_payment_failed(self, event: InvoicePaymentFailed) -> Optional[str]:
        """
        Handle invoice.payment_failed.

        attempt_count < 3: status only, the paid plan stays usable while Stripe retries.
        attempt_count >= 3: forced back to the free tier.
        """
        logger.info(
            "HANDLER_START event.type=invoice.payment_failed stripe_customer_id=%s invoice_id=%s attempt_count=%s",
            event.customer_id, event.invoice_id, event.attempt_count,
        )
        if not event.customer_id:
            logger.warning(f"No customer on failed invoice {event.invoice_id} - nothing to update")
            return None
        profile = await self.profiles.find_by_customer_id(event.customer_id)
        if not profile:
            logger.warning(f"No profile for customer {event.customer_id} - failed invoice {event.invoice_id} ignored")
            return None
        user_id = profile["user_id"]
        current_plan = profile.get("plan_type")

        outcome = decide_outcome(event.attempt_count)
        if outcome.force_downgrade:
            await self.profiles.update_fields(user_id, self._free_tier_fields(SubscriptionStatus.PAYMENT_FAILED))
            logger.warning(
                f"User {user_id} downgraded to gratuit after {event.attempt_count} failed payment attempts"
            )
        else:
            await self.profiles.update_fields(user_id, {"subscription_status": outcome.status})

        # Recorded for every attempt once the write lands; a failed write is redelivered and records then
        self.analytics.record(user_id, ANALYTICS_EVENTS["PAYMENT_FAILED"], {
            "amount": _cents_to_amount(event.amount_due),
            "attemptCount": event.attempt_count,
            "planType": current_plan,
            "downgraded": outcome.force_downgrade,
        })
        logger.info(
            "HANDLER_END event.type=invoice.payment_failed user_id=%s db_updated=subscription_status=%s force_downgrade=%s",
            user_id, outcome.status, outcome.force_downgrade,
        )
        return user_id

    async def _handle_payment_succeeded(self, event: InvoicePaymentSucceeded) -> Optional[str]:
        """
        Handle invoice.payment_succeeded - clears payment_failed.

        The plan is not restored: a downgraded user has to subscribe again.
        Any other status (e.g. canceled) is left alone.
        """
        logger.info(
            "HANDLER_START event.type=invoice.payment_succeeded stripe_customer_id=%s invoice_id=%s",
            event.customer_id, event.invoice_id,
        )
        if not event.customer_id:
            logger.warning(f"No customer on paid invoice {event.invoice_id} - nothing to update")
            return None
        profile = await self.profiles.find_by_customer_id(event.customer_id)
        if not profile:
            logger.warning(f"No profile for customer {event.customer_id} - paid invoice {event.invoice_id} ignored")
            return None
        user_id = profile["user_id"]

        if profile.get("subscription_status") != SubscriptionStatus.PAYMENT_FAILED.value:
            logger.info("HANDLER_END event.type=invoice.payment_succeeded user_id=%s db_updated=(none)", user_id)
            return user_id

        await self.profiles.update_fields(user_id, {"subscription_status": SubscriptionStatus.ACTIVE.value})
        logger.info(
            "HANDLER_END event.type=invoice.payment_succeeded user_id=%s db_updated=subscription_status=active (recovered)",
            user_id,
        )
        return user_id

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_profile(self, customer_id: Optional[str]) -> Dict[str, Any]:
        profile = await self.profiles.find_by_customer_id(customer_id)
        if not profile:
            logger.error(f"Profile not found for customer: {customer_id}")
            raise ProfileNotFoundError("Profile not found")
        return profile

    def _free_tier_fields(self, status: SubscriptionStatus) -> Dict[str, Any]:
        return {
            "plan_type": FREE_PLAN.value,
            "property_limit": self.registry.get_plan_limits(FREE_PLAN),
            "stripe_subscription_id": None,
            "subscription_status": status.value,
        }

    def _price_amount(self, price: Dict[str, Any], plan_type: PlanType) -> float:
        """Amount in currency units from the Stripe price, or the catalog price."""
        amount = _cents_to_amount(price.get("unit_amount"))
        if amount is None:
            return self.registry.get_plan_details(plan_type)["price"]
        return amount


def _cents_to_amount(cents: Any) -> Optional[float]:
    if cents is None:
        return None
    try:
        return int(cents) / 100
    except (TypeError, ValueError):
        return None
