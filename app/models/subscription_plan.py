from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import Field


class SubscriptionPlan(Document):
    name: Indexed(str, unique=True)
    description: str = ""
    price: float = Field(ge=0)
    currency: str = "usd"
    billing_period: Literal["month", "year"] = "month"
    credits_per_period: int = Field(ge=1)
    benefits: list[str] = Field(default_factory=list)
    is_active: bool = True
    display_order: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "subscription_plans"
