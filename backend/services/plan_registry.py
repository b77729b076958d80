"""Canonical Plan Registry - Single Source of Truth for plan tiers and property limits.

This is the AUTHORITATIVE source for:
- Plan tiers and display names
- Monthly pricing
- Property limits (None = unlimited)
- Feature lists shown on the subscription page
- Stripe price ID -> plan tier mapping

Plan Structure:
- gratuit: free tier (2 properties, no Stripe price)
- essentiel: 9.99 EUR/month (10 properties)
- premium: 19.99 EUR/month (unlimited properties)

Every lookup is total: an unrecognized tier resolves to gratuit, never an error.
"""
from typing import Dict, List, Optional, Any
from models import PlanType
import os
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN DEFINITIONS - Complete plan configuration
# ============================================================================
# price_env names the environment variable carrying the Stripe price ID.
PLAN_DEFINITIONS = {
    PlanType.GRATUIT: {
        "id": "gratuit",
        "name": "Gratuit",
        "price": 0,
        "currency": "EUR",
        "price_env": None,
        "max_properties": 2,
        "features": [
            "2 biens maximum",
            "Fonctionnalités de base",
            "Graphique patrimoine",
            "Support email",
        ],
    },
    PlanType.ESSENTIEL: {
        "id": "essentiel",
        "name": "Essentiel",
        "price": 9.99,
        "currency": "EUR",
        "price_env": "STRIPE_PRICE_ESSENTIEL",
        "max_properties": 10,
        "features": [
            "10 biens maximum",
            "Toutes fonctionnalités avancées",
            "Quittances PDF",
            "Envoi email automatique",
            "Support prioritaire",
        ],
    },
    PlanType.PREMIUM: {
        "id": "premium",
        "name": "Premium",
        "price": 19.99,
        "currency": "EUR",
        "price_env": "STRIPE_PRICE_PREMIUM",
        "max_properties": None,  # illimité
        "features": [
            "Biens illimités",
            "Toutes fonctionnalités avancées",
            "Quittances PDF illimitées",
            "Exports avancés",
            "Import CSV",
            "Support premium 24/7",
        ],
    },
}

FREE_PLAN = PlanType.GRATUIT

# Fail open toward the cheaper paid tier when a paid price is not recognized.
UNKNOWN_PRICE_FALLBACK = PlanType.ESSENTIEL

VALID_PLAN_TIERS = frozenset(p.value for p in PlanType)


def get_stripe_price_mappings() -> Dict[str, PlanType]:
    """
    Build the price_id -> plan tier table from the environment.
    Read on every call so a restart is not needed after rotating prices.
    """
    mappings = {}
    for plan_type, plan_def in PLAN_DEFINITIONS.items():
        env_name = plan_def["price_env"]
        if not env_name:
            continue
        price_id = (os.getenv(env_name) or "").strip()
        if price_id:
            mappings[price_id] = plan_type
    return mappings


class PlanRegistryService:
    """Central service for plan and limit operations. No side effects."""

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def get_plan_details(self, tier: Any) -> Dict[str, Any]:
        """Get complete plan definition, with its configured Stripe price ID."""
        plan_type = self.resolve_plan_type(tier)
        plan = dict(PLAN_DEFINITIONS[plan_type])
        plan["features"] = list(plan["features"])
        env_name = plan.pop("price_env")
        plan["price_id"] = None
        if env_name:
            plan["price_id"] = (os.getenv(env_name) or "").strip() or None
        return plan

    def get_all_plans(self) -> List[Dict[str, Any]]:
        """Get all plans for display, cheapest first."""
        plans = [self.get_plan_details(plan_type) for plan_type in PLAN_DEFINITIONS]
        return sorted(plans, key=lambda p: p["price"])

    def get_plan_max_properties(self, tier: Any) -> Optional[int]:
        """Get max properties for a plan (None = unlimited)."""
        return PLAN_DEFINITIONS[self.resolve_plan_type(tier)]["max_properties"]

    def get_plan_limits(self, tier: Any) -> Optional[int]:
        """Value stored in profile.property_limit for a tier."""
        return self.get_plan_max_properties(tier)

    # -------------------------------------------------------------------------
    # Limit Policy
    # -------------------------------------------------------------------------

    def can_add_property(self, tier: Any, current_count: int) -> bool:
        max_properties = self.get_plan_max_properties(tier)
        if max_properties is None:
            return True
        return _normalize_count(current_count) < max_properties

    def get_remaining_properties(self, tier: Any, current_count: int) -> Optional[int]:
        """Remaining slots for a plan; never negative, None when unlimited."""
        max_properties = self.get_plan_max_properties(tier)
        if max_properties is None:
            return None
        return max(0, max_properties - _normalize_count(current_count))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def is_valid_plan_tier(self, value: Any) -> bool:
        """Only the three exact tier identifiers are valid."""
        if isinstance(value, PlanType):
            return True
        return isinstance(value, str) and value in VALID_PLAN_TIERS

    def resolve_plan_type(self, value: Any) -> PlanType:
        """Resolve a stored tier to PlanType; anything unrecognized is the free tier."""
        if isinstance(value, PlanType):
            return value
        if self.is_valid_plan_tier(value):
            return PlanType(value)
        return FREE_PLAN

    # -------------------------------------------------------------------------
    # Stripe Price ID Mappings
    # -------------------------------------------------------------------------

    def map_price_id_to_plan(self, price_id: Optional[str]) -> Optional[PlanType]:
        """Exact lookup: paid tier for a Stripe price ID, or None."""
        if not price_id:
            return None
        return get_stripe_price_mappings().get(price_id)

    def get_plan_from_price_id(self, price_id: Optional[str]) -> PlanType:
        """
        Derive plan tier from a subscription price ID.
        Unknown prices resolve to essentiel, never to the free tier.
        """
        plan_type = self.map_price_id_to_plan(price_id)
        if plan_type is None:
            logger.warning(
                "Unrecognized Stripe price_id=%s - falling back to %s",
                price_id, UNKNOWN_PRICE_FALLBACK.value,
            )
            return UNKNOWN_PRICE_FALLBACK
        return plan_type

    def is_paid_price(self, price_id: Optional[str]) -> bool:
        return self.map_price_id_to_plan(price_id) is not None


def _normalize_count(current_count: Any) -> int:
    try:
        count = int(current_count)
    except (TypeError, ValueError):
        return 0
    return max(0, count)


# Singleton instance
plan_registry = PlanRegistryService()
