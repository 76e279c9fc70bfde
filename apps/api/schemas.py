from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal


class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    subscription_tier: str
    grandfathered_until: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionResponse(BaseModel):
    id: str
    external_subscription_id: str
    external_plan_id: Optional[str] = None
    status: str
    amount_per_cycle: Optional[Decimal] = None
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_payment_at: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WorkoutRequest(BaseModel):
    """Workout generation preferences as sent by the web client."""
    fitness_level: str = Field(default="beginner", alias="fitnessLevel")
    goals: str = "general"
    duration: int = Field(default=30, ge=10, le=180)
    equipment: str = "bodyweight"

    model_config = ConfigDict(populate_by_name=True)


class CreateSubscriptionRequest(BaseModel):
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class GrandfatherGrantRequest(BaseModel):
    # Defaults to now + configured grant duration when omitted
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class GrandfatherRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class SyncSubscriptionRequest(BaseModel):
    # Defaults to the caller's most recent subscription
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId", max_length=255)

    model_config = ConfigDict(populate_by_name=True)
