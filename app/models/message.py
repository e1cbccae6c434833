from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class Message(Document):
    """One message in the conversation attached to an application (job owner <-> applicant)."""
    application_id: PydanticObjectId
    job_id: PydanticObjectId
    sender_id: PydanticObjectId
    recipient_id: PydanticObjectId
    content: str
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "messages"
        indexes = [
            [("application_id", 1), ("created_at", 1)],
            [("recipient_id", 1), ("read", 1)],
            [("sender_id", 1), ("created_at", -1)],
        ]
