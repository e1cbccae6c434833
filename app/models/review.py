from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel


class ReviewCategories(BaseModel):
    work_quality: int | None = Field(default=None, ge=1, le=5)
    communication: int | None = Field(default=None, ge=1, le=5)
    punctuality: int | None = Field(default=None, ge=1, le=5)
    value_for_money: int | None = Field(default=None, ge=1, le=5)


class Review(Document):
    job_id: PydanticObjectId
    tradesperson_id: PydanticObjectId
    reviewer_id: PydanticObjectId
    rating: int = Field(ge=1, le=5)
    title: str
    content: str
    categories: ReviewCategories = Field(default_factory=ReviewCategories)
    status: Literal["published", "hidden"] = "published"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "reviews"
        indexes = [
            IndexModel([("job_id", ASCENDING), ("reviewer_id", ASCENDING)], unique=True),
            [("tradesperson_id", 1), ("status", 1)],
        ]
