from datetime import datetime
from typing import Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

TransactionType = Literal["purchase", "usage", "refund", "bonus", "expiration"]
RelatedModel = Literal["Transaction", "Subscription", "Application"]

TRANSACTION_TYPES: tuple[str, ...] = ("purchase", "usage", "refund", "bonus", "expiration")


class LedgerEntry(BaseModel):
    """One immutable balance change; never edited once pushed."""
    amount: int  # positive = credit, negative = debit
    transaction_type: TransactionType
    related_to: PydanticObjectId | None = None
    related_model: RelatedModel | None = None
    date: datetime = Field(default_factory=datetime.utcnow)
    notes: str = ""


class CreditAccount(Document):
    """Tradesperson balance and its history, kept in one document so both change atomically."""
    user_id: Indexed(PydanticObjectId, unique=True)
    available: int = 0
    spent: int = 0
    history: list[LedgerEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_accounts"
