from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanType(str, Enum):
    GRATUIT = "gratuit"
    ESSENTIEL = "essentiel"
    PREMIUM = "premium"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAYMENT_FAILED = "payment_failed"
    TRIALING = "trialing"

class StripeEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

# ============================================================================
# MODELS
# ============================================================================

class UserProfile(BaseModel):
    """Account state for one user. Only the webhook reconciler changes billing fields."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str
    email: Optional[str] = None
    plan_type: PlanType = PlanType.GRATUIT
    property_limit: Optional[int] = 2
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    # Provider-reported statuses are stored verbatim, so this is not restricted to SubscriptionStatus
    subscription_status: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class AnalyticsEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    event: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class StripeEventRecord(BaseModel):
    event_id: str
    type: Optional[str] = None
    status: StripeEventStatus = StripeEventStatus.PROCESSING
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    related_user_id: Optional[str] = None

# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class CheckoutRequest(BaseModel):
    price_id: str = ""
    user_id: str = ""
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class PortalRequest(BaseModel):
    user_id: str = ""

class SessionResponse(BaseModel):
    url: str
    session_id: Optional[str] = None

class QuotaResponse(BaseModel):
    plan_type: PlanType
    max_properties: Optional[int] = None
    current_count: int
    remaining: Optional[int] = None
    can_add: bool
