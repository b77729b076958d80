"""
Stripe webhook reconciliation against an in-memory database.
Signed payloads go through the real Stripe signature check; only the live
subscription lookup is mocked.
"""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock

from conftest import (
    PRICE_ESSENTIEL,
    PRICE_PREMIUM,
    make_event,
    signed_payload,
    stripe_signature_header,
    subscription_with_price,
)
from services.analytics import AnalyticsSink
from services.event_ledger import StripeEventLedger
from services.profile_store import ProfileStore
from services.stripe_service import StripeGateway
from services.stripe_webhook_service import StripeWebhookService

USER_ID = "user-1"
CUS_ID = "cus_123"
SUB_ID = "sub_123"


@pytest.fixture
def gateway(billing_settings):
    gw = StripeGateway(billing_settings)
    gw.retrieve_subscription = AsyncMock(return_value=subscription_with_price(PRICE_PREMIUM, 1999, SUB_ID))
    return gw


@pytest.fixture
def analytics(db):
    sink = AnalyticsSink()
    sink.init(db)
    return sink


@pytest.fixture
def service(db, gateway, analytics):
    return StripeWebhookService(
        gateway=gateway,
        profiles=ProfileStore(db),
        analytics=analytics,
        ledger=StripeEventLedger(db),
    )


async def _deliver(service, event):
    payload, signature = signed_payload(event)
    return await service.process_webhook(payload, signature)


async def _seed_profile(db, **fields):
    store = ProfileStore(db)
    await store.create_profile(USER_ID, "owner@example.com")
    if fields:
        await store.update_fields(USER_ID, fields)


async def _profile(db):
    return await ProfileStore(db).find_by_user_id(USER_ID)


async def _analytics_events(db, analytics, name):
    await analytics.flush()
    return [doc for doc in db.analytics_events.docs if doc["event"] == name]


def _checkout_event(user_id=USER_ID, event_id=None):
    return make_event("checkout.session.completed", {
        "id": "cs_123",
        "mode": "subscription",
        "client_reference_id": user_id,
        "customer": CUS_ID,
        "subscription": SUB_ID,
        "metadata": {"userId": user_id},
    }, event_id=event_id)


def _paid_profile(plan_type="premium", status="active"):
    return {
        "plan_type": plan_type,
        "property_limit": None if plan_type == "premium" else 10,
        "stripe_customer_id": CUS_ID,
        "stripe_subscription_id": SUB_ID,
        "subscription_status": status,
    }


class TestSignatureVerification:

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, service, db):
        await _seed_profile(db)
        payload = json.dumps(_checkout_event()).encode()
        result = await service.process_webhook(payload, None)
        assert result.status_code == 400
        assert result.body == {"error": "No signature"}
        assert (await _profile(db))["plan_type"] == "gratuit"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, service, db, gateway):
        await _seed_profile(db)
        payload, signature = signed_payload(_checkout_event(), secret="whsec_wrong")
        result = await service.process_webhook(payload, signature)
        assert result.status_code == 400
        assert result.body == {"error": "Invalid signature"}
        gateway.retrieve_subscription.assert_not_awaited()
        assert (await _profile(db))["plan_type"] == "gratuit"

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, service, db):
        await _seed_profile(db)
        payload, signature = signed_payload(_checkout_event())
        tampered = payload.replace(USER_ID.encode(), b"user-2")
        result = await service.process_webhook(tampered, signature)
        assert result.status_code == 400
        assert result.body == {"error": "Invalid signature"}

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, service):
        payload = json.dumps(_checkout_event()).encode()
        signature = stripe_signature_header(payload, timestamp=1_000_000)
        result = await service.process_webhook(payload, signature)
        assert result.status_code == 400


class TestDispatch:

    @pytest.mark.asyncio
    async def test_unsupported_event_ignored(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("premium"))
        before = await _profile(db)
        event = make_event("charge.refunded", {"id": "ch_1", "customer": CUS_ID})
        result = await _deliver(service, event)
        assert result.status_code == 200
        assert result.body == {"received": True, "ignored": True}
        assert db.stripe_events.docs == []
        assert await _profile(db) == before
        await analytics.flush()
        assert db.analytics_events.docs == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_processed_once(self, service, db, gateway):
        await _seed_profile(db)
        event = _checkout_event(event_id="evt_dup")
        first = await _deliver(service, event)
        second = await _deliver(service, event)
        assert first.status_code == second.status_code == 200
        assert second.body == {"received": True}
        assert gateway.retrieve_subscription.await_count == 1
        assert db.stripe_events.docs[0]["status"] == "PROCESSED"
        assert db.stripe_events.docs[0]["related_user_id"] == USER_ID


class TestCheckoutCompleted:

    @pytest.mark.asyncio
    async def test_activates_premium(self, service, db, analytics):
        await _seed_profile(db)
        result = await _deliver(service, _checkout_event())
        assert result.status_code == 200
        assert result.body == {"received": True}

        profile = await _profile(db)
        assert profile["plan_type"] == "premium"
        assert profile["property_limit"] is None
        assert profile["subscription_status"] == "active"
        assert profile["stripe_customer_id"] == CUS_ID
        assert profile["stripe_subscription_id"] == SUB_ID

        events = await _analytics_events(db, analytics, "payment_succeeded")
        assert len(events) == 1
        assert events[0]["properties"] == {"planType": "premium", "amount": 19.99}

    @pytest.mark.asyncio
    async def test_same_event_twice_gives_same_profile(self, db, gateway, analytics):
        """Handlers write terminal values, so a repeat without the ledger changes nothing."""
        no_ledger = StripeWebhookService(gateway=gateway, profiles=ProfileStore(db), analytics=analytics)
        await _seed_profile(db)
        event = _checkout_event(event_id="evt_twice")

        assert (await _deliver(no_ledger, event)).status_code == 200
        once = await _profile(db)
        assert (await _deliver(no_ledger, event)).status_code == 200
        twice = await _profile(db)

        assert gateway.retrieve_subscription.await_count == 2
        once.pop("updated_at")
        twice.pop("updated_at")
        assert twice == once
        assert len(db.profiles.docs) == 1

    @pytest.mark.asyncio
    async def test_essentiel_price(self, service, db, gateway):
        await _seed_profile(db)
        gateway.retrieve_subscription.return_value = subscription_with_price(PRICE_ESSENTIEL, 999)
        await _deliver(service, _checkout_event())
        profile = await _profile(db)
        assert (profile["plan_type"], profile["property_limit"]) == ("essentiel", 10)

    @pytest.mark.asyncio
    async def test_unknown_price_falls_back_to_essentiel(self, service, db, gateway):
        await _seed_profile(db)
        gateway.retrieve_subscription.return_value = subscription_with_price("price_legacy")
        result = await _deliver(service, _checkout_event())
        assert result.status_code == 200
        assert (await _profile(db))["plan_type"] == "essentiel"

    @pytest.mark.asyncio
    async def test_missing_user_id_rejected(self, service, db, gateway):
        event = make_event("checkout.session.completed", {"id": "cs_1", "subscription": SUB_ID, "metadata": {}})
        result = await _deliver(service, event)
        assert result.status_code == 400
        assert result.body == {"error": "No userId"}
        gateway.retrieve_subscription.assert_not_awaited()
        assert db.profiles.docs == []

    @pytest.mark.asyncio
    async def test_creates_profile_when_missing(self, service, db):
        result = await _deliver(service, _checkout_event(user_id="user-new"))
        assert result.status_code == 200
        profile = await ProfileStore(db).find_by_user_id("user-new")
        assert profile["plan_type"] == "premium"

    @pytest.mark.asyncio
    async def test_stripe_lookup_failure_returns_500(self, service, db, gateway):
        await _seed_profile(db)
        gateway.retrieve_subscription.side_effect = RuntimeError("stripe unavailable")
        result = await _deliver(service, _checkout_event())
        assert result.status_code == 500
        assert result.body == {"error": "stripe unavailable"}
        assert (await _profile(db))["plan_type"] == "gratuit"


class TestSubscriptionUpdated:

    def _event(self, price_id=PRICE_PREMIUM, status="active", with_items=True):
        obj = {"id": SUB_ID, "customer": CUS_ID, "status": status}
        if with_items:
            obj["items"] = {"data": [{"price": {"id": price_id}}]}
        return make_event("customer.subscription.updated", obj)

    @pytest.mark.asyncio
    async def test_unknown_customer_returns_404(self, service, db):
        result = await _deliver(service, self._event())
        assert result.status_code == 404
        assert result.body == {"error": "Profile not found"}

    @pytest.mark.asyncio
    async def test_upgrade_records_plan_change(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("essentiel"))
        result = await _deliver(service, self._event(PRICE_PREMIUM))
        assert result.status_code == 200
        profile = await _profile(db)
        assert (profile["plan_type"], profile["property_limit"]) == ("premium", None)
        events = await _analytics_events(db, analytics, "plan_upgraded")
        assert events[0]["properties"] == {"fromPlan": "essentiel", "toPlan": "premium"}

    @pytest.mark.asyncio
    async def test_status_stored_verbatim(self, service, db):
        await _seed_profile(db, **_paid_profile("premium"))
        await _deliver(service, self._event(PRICE_PREMIUM, status="past_due"))
        profile = await _profile(db)
        assert profile["subscription_status"] == "past_due"
        assert profile["plan_type"] == "premium"

    @pytest.mark.asyncio
    async def test_same_plan_no_analytics(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("premium"))
        await _deliver(service, self._event(PRICE_PREMIUM))
        assert await _analytics_events(db, analytics, "plan_upgraded") == []

    @pytest.mark.asyncio
    async def test_missing_items_uses_live_subscription(self, service, db, gateway):
        await _seed_profile(db, **_paid_profile("essentiel"))
        await _deliver(service, self._event(with_items=False))
        gateway.retrieve_subscription.assert_awaited_once_with(SUB_ID)
        assert (await _profile(db))["plan_type"] == "premium"


class TestSubscriptionDeleted:

    @pytest.mark.asyncio
    async def test_downgrades_to_free_tier(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("premium"))
        result = await _deliver(service, make_event("customer.subscription.deleted", {"id": SUB_ID, "customer": CUS_ID}))
        assert result.status_code == 200
        profile = await _profile(db)
        assert profile["plan_type"] == "gratuit"
        assert profile["property_limit"] == 2
        assert profile["stripe_subscription_id"] is None
        assert profile["subscription_status"] == "canceled"
        assert profile["stripe_customer_id"] == CUS_ID
        events = await _analytics_events(db, analytics, "subscription_canceled")
        assert events[0]["properties"] == {"fromPlan": "premium"}

    @pytest.mark.asyncio
    async def test_unknown_customer_returns_404(self, service):
        result = await _deliver(service, make_event("customer.subscription.deleted", {"id": SUB_ID, "customer": "cus_x"}))
        assert result.status_code == 404


class TestPaymentFailed:

    def _event(self, attempt_count, customer=CUS_ID):
        return make_event("invoice.payment_failed", {
            "id": "in_1", "customer": customer, "attempt_count": attempt_count, "amount_due": 1999,
        })

    @pytest.mark.asyncio
    async def test_grace_period_keeps_plan(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("premium"))
        result = await _deliver(service, self._event(2))
        assert result.status_code == 200
        profile = await _profile(db)
        assert profile["plan_type"] == "premium"
        assert profile["subscription_status"] == "payment_failed"
        assert profile["stripe_subscription_id"] == SUB_ID
        events = await _analytics_events(db, analytics, "payment_failed")
        assert events[0]["properties"]["attemptCount"] == 2
        assert events[0]["properties"]["amount"] == 19.99
        assert events[0]["properties"]["planType"] == "premium"

    @pytest.mark.asyncio
    async def test_third_attempt_forces_downgrade(self, service, db):
        await _seed_profile(db, **_paid_profile("premium"))
        await _deliver(service, self._event(3))
        profile = await _profile(db)
        assert profile["plan_type"] == "gratuit"
        assert profile["property_limit"] == 2
        assert profile["stripe_subscription_id"] is None
        assert profile["subscription_status"] == "payment_failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempt_count,downgraded", [(1, False), (3, True)])
    async def test_records_event_below_and_at_threshold(self, service, db, analytics, attempt_count, downgraded):
        await _seed_profile(db, **_paid_profile("premium"))
        await _deliver(service, self._event(attempt_count))
        events = await _analytics_events(db, analytics, "payment_failed")
        assert len(events) == 1
        assert events[0]["properties"]["downgraded"] is downgraded
        assert events[0]["properties"]["attemptCount"] == attempt_count

    @pytest.mark.asyncio
    async def test_failed_write_records_on_redelivery_only(self, service, db, analytics):
        await _seed_profile(db, **_paid_profile("premium"))
        event = self._event(2)
        db.profiles.fail_writes = True
        assert (await _deliver(service, event)).status_code == 500
        assert await _analytics_events(db, analytics, "payment_failed") == []

        db.profiles.fail_writes = False
        assert (await _deliver(service, event)).status_code == 200
        assert len(await _analytics_events(db, analytics, "payment_failed")) == 1

    @pytest.mark.asyncio
    async def test_unknown_customer_is_soft_noop(self, service, db):
        result = await _deliver(service, self._event(3, customer="cus_unknown"))
        assert result.status_code == 200
        assert result.body == {"received": True}

    @pytest.mark.asyncio
    async def test_missing_customer_is_soft_noop(self, service, db):
        result = await _deliver(service, self._event(1, customer=None))
        assert result.status_code == 200


class TestPaymentSucceeded:

    def _event(self):
        return make_event("invoice.payment_succeeded", {"id": "in_2", "customer": CUS_ID, "amount_paid": 1999})

    @pytest.mark.asyncio
    async def test_recovers_from_payment_failed(self, service, db):
        await _seed_profile(db, **_paid_profile("premium", status="payment_failed"))
        await _deliver(service, self._event())
        profile = await _profile(db)
        assert profile["subscription_status"] == "active"
        assert profile["plan_type"] == "premium"

    @pytest.mark.asyncio
    async def test_other_status_untouched(self, service, db):
        await _seed_profile(db, **_paid_profile("premium", status="canceled"))
        await _deliver(service, self._event())
        assert (await _profile(db))["subscription_status"] == "canceled"

    @pytest.mark.asyncio
    async def test_does_not_restore_downgraded_plan(self, service, db):
        await _seed_profile(db, **_paid_profile("premium"))
        await _deliver(service, make_event("invoice.payment_failed", {"id": "in_1", "customer": CUS_ID, "attempt_count": 3}))
        await _deliver(service, self._event())
        profile = await _profile(db)
        assert profile["subscription_status"] == "active"
        assert profile["plan_type"] == "gratuit"


class TestFailuresAndRedelivery:

    @pytest.mark.asyncio
    async def test_persistence_failure_returns_500_then_redelivery_succeeds(self, service, db):
        await _seed_profile(db)
        event = _checkout_event(event_id="evt_retry")
        db.profiles.fail_writes = True
        failed = await _deliver(service, event)
        assert failed.status_code == 500
        assert db.stripe_events.docs[0]["status"] == "FAILED"

        db.profiles.fail_writes = False
        retried = await _deliver(service, event)
        assert retried.status_code == 200
        assert (await _profile(db))["plan_type"] == "premium"
        assert db.stripe_events.docs[0]["status"] == "PROCESSED"

    @pytest.mark.asyncio
    async def test_timeout_returns_500(self, db, gateway, analytics):
        async def slow_subscription(subscription_id):
            await asyncio.sleep(1)
            return subscription_with_price(PRICE_PREMIUM)

        gateway.retrieve_subscription = AsyncMock(side_effect=slow_subscription)
        slow_service = StripeWebhookService(
            gateway=gateway,
            profiles=ProfileStore(db),
            analytics=analytics,
            timeout_seconds=0.05,
        )
        await _seed_profile(db)
        result = await _deliver(slow_service, _checkout_event())
        assert result.status_code == 500
        assert (await _profile(db))["plan_type"] == "gratuit"

    @pytest.mark.asyncio
    async def test_subscription_lifecycle(self, service, db):
        """Checkout, failed payments, recovery, then cancellation."""
        await _seed_profile(db)
        await _deliver(service, _checkout_event())
        await _deliver(service, make_event("invoice.payment_failed", {"id": "in_1", "customer": CUS_ID, "attempt_count": 1}))
        assert (await _profile(db))["plan_type"] == "premium"
        await _deliver(service, make_event("invoice.payment_succeeded", {"id": "in_1", "customer": CUS_ID}))
        assert (await _profile(db))["subscription_status"] == "active"
        await _deliver(service, make_event("customer.subscription.deleted", {"id": SUB_ID, "customer": CUS_ID}))
        profile = await _profile(db)
        assert (profile["plan_type"], profile["subscription_status"]) == ("gratuit", "canceled")
