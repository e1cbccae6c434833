from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

ApplicationStatus = Literal["pending", "viewed", "shortlisted", "accepted", "rejected", "withdrawn"]

# Statuses the job owner can still act on; accepting one application rejects the rest of these.
ACTIVE_APPLICATION_STATUSES: tuple[str, ...] = ("pending", "viewed", "shortlisted")


class Bid(BaseModel):
    type: Literal["fixed", "hourly", "negotiable"] = "negotiable"
    amount: float | None = None
    currency: str = "USD"
    estimated_hours: float | None = None
    estimated_days: float | None = None


class ApplicationNotes(BaseModel):
    customer: str | None = None
    tradesperson: str | None = None
    internal: str | None = None


class StatusChange(BaseModel):
    status: ApplicationStatus
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    changed_by: str | None = None
    note: str | None = None


class Application(Document):
    job_id: PydanticObjectId
    tradesperson_id: PydanticObjectId
    status: ApplicationStatus = "pending"
    cover_letter: str
    bid: Bid = Field(default_factory=Bid)
    additional_details: str | None = None
    credit_cost: int  # what was debited at submission
    withdrawal_reason: str | None = None
    notes: ApplicationNotes = Field(default_factory=ApplicationNotes)
    status_history: list[StatusChange] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "applications"
        indexes = [
            IndexModel([("job_id", ASCENDING), ("tradesperson_id", ASCENDING)], unique=True),
            [("job_id", 1), ("status", 1)],
            [("tradesperson_id", 1), ("status", 1)],
            [("submitted_at", -1)],
        ]
