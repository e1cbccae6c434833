from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

from app.models.credit_account import TransactionType

TransactionStatus = Literal["pending", "completed", "failed", "canceled"]


class Transaction(Document):
    """External payment record (Stripe payment intent or invoice)."""
    user_id: PydanticObjectId
    amount: int  # credits granted
    price: float = 0  # money charged, major units
    currency: str = "usd"
    type: TransactionType
    status: TransactionStatus = "pending"
    description: str = ""
    related_to: PydanticObjectId | None = None
    related_model: Literal["Subscription", "CreditPackage"] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)  # payment_ref, package_id / plan_id
    # Completed payments: the payment reference. Recorded failures: "failed:<ref>".
    idempotency_key: Indexed(str, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("type", 1)],
        ]
