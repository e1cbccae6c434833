from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

SubscriptionStatus = Literal["active", "inactive", "canceled", "expired", "past_due", "pending"]


class SubscriptionEnrollment(BaseModel):
    """Active plan enrollment embedded in the tradesperson's user document."""
    plan_id: PydanticObjectId
    status: SubscriptionStatus = "pending"
    start_date: datetime | None = None
    end_date: datetime | None = None
    auto_renew: bool = True
    stripe_subscription_id: str | None = None


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    role: Literal["customer", "tradesperson", "admin"] = "customer"
    session_version: int = 0
    is_active: bool = True
    is_verified: bool = False  # tradespeople must be verified by an admin before applying
    stripe_customer_id: str | None = None
    subscription: SubscriptionEnrollment | None = None
    average_rating: float = 0
    total_reviews: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        indexes = [
            [("role", 1)],
            [("subscription.stripe_subscription_id", 1)],
        ]
