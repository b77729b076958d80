"""Payment-failure downgrade policy.

Stripe retries a failed invoice and reports the attempt number on every
invoice.payment_failed event. Below the threshold the user keeps paid access
(grace period) and only the status changes; at the threshold the account is
forced back to the free tier.

The attempt counter is Stripe's; nothing is counted locally.
"""
from dataclasses import dataclass
from typing import Any

from models import SubscriptionStatus

DOWNGRADE_ATTEMPT_THRESHOLD = 3


@dataclass(frozen=True)
class PaymentFailureOutcome:
    status: str
    force_downgrade: bool


def normalize_attempt_count(attempt_count: Any) -> int:
    """Missing or malformed attempt_count counts as 0."""
    if attempt_count is None or isinstance(attempt_count, bool):
        return 0
    try:
        return int(attempt_count)
    except (TypeError, ValueError):
        return 0


def decide_outcome(attempt_count: Any) -> PaymentFailureOutcome:
    attempts = normalize_attempt_count(attempt_count)
    return PaymentFailureOutcome(
        status=SubscriptionStatus.PAYMENT_FAILED.value,
        force_downgrade=attempts >= DOWNGRADE_ATTEMPT_THRESHOLD,
    )
