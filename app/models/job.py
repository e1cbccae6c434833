from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field

JobStatus = Literal["draft", "open", "in-progress", "completed", "canceled", "expired"]

TERMINAL_JOB_STATUSES: tuple[str, ...] = ("completed", "canceled", "expired")


class Budget(BaseModel):
    type: Literal["fixed", "hourly", "negotiable"] = "negotiable"
    min_amount: float | None = None
    max_amount: float | None = None
    currency: str = "USD"


class Location(BaseModel):
    address: str = ""
    city: str
    state: str
    postal_code: str
    country: str = "United States"


class Timeline(BaseModel):
    posted_date: datetime = Field(default_factory=datetime.utcnow)
    start_date: datetime | None = None
    end_date: datetime | None = None


class Dispute(BaseModel):
    exists: bool = False
    reason: str | None = None
    status: Literal["pending", "resolved", "rejected"] | None = None
    resolved_at: datetime | None = None


class CompletionDetails(BaseModel):
    completed_at: datetime
    final_amount: float = 0
    customer_feedback: str = ""
    tradesperson_feedback: str = ""
    dispute: Dispute = Field(default_factory=Dispute)


class Job(Document):
    title: str
    description: str
    category: str
    required_skills: list[str] = Field(default_factory=list)
    budget: Budget = Field(default_factory=Budget)
    location: Location
    customer_id: PydanticObjectId
    status: JobStatus = "open"
    selected_tradesperson_id: PydanticObjectId | None = None
    credit_cost: int = Field(default=1, ge=1)
    application_count: int = 0
    is_urgent: bool = False
    timeline: Timeline = Field(default_factory=Timeline)
    completion_details: CompletionDetails | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "jobs"
        indexes = [
            [("customer_id", 1)],
            [("selected_tradesperson_id", 1)],
            [("status", 1), ("timeline.posted_date", 1)],
            [("category", 1), ("location.city", 1), ("status", 1)],
        ]
