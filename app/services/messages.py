"""Per-application conversations between the job owner and the applicant.

Messages are plain stored documents; delivery is by polling the list and unread endpoints.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import Or, Set

from app.core.exceptions import BadRequestError, ForbiddenError
from app.core.logging import get_logger
from app.core.security import Principal
from app.models.application import Application
from app.models.job import Job
from app.models.message import Message
from app.services import applications as applications_service
from app.services import jobs as jobs_service

log = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000


async def _load_thread(principal: Principal, application_id: PydanticObjectId) -> tuple[Application, Job, PydanticObjectId]:
    """Return (application, job, counterpart id). Only the two parties may use the thread."""
    application = await applications_service.get_application_or_404(application_id)
    job = await jobs_service.get_job_or_404(application.job_id)
    if jobs_service.is_owner(job, principal):
        return application, job, application.tradesperson_id
    if str(application.tradesperson_id) == principal.user_id:
        return application, job, job.customer_id
    raise ForbiddenError("Only the job owner and the applicant can access these messages")


async def send_message(principal: Principal, application_id: PydanticObjectId, content: str) -> Message:
    text = (content or "").strip()
    if not text:
        raise BadRequestError("Message content is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise BadRequestError(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")
    application, job, recipient_id = await _load_thread(principal, application_id)
    message = Message(
        application_id=application.id,
        job_id=job.id,
        sender_id=PydanticObjectId(principal.user_id),
        recipient_id=recipient_id,
        content=text,
    )
    await message.insert()
    log.info("message_sent", message_id=str(message.id), application_id=str(application.id))
    return message


async def list_messages(
    principal: Principal,
    application_id: PydanticObjectId,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Message], int]:
    """Oldest first, like a chat transcript."""
    application, _, _ = await _load_thread(principal, application_id)
    total = await Message.find(Message.application_id == application.id).count()
    items = await Message.find(Message.application_id == application.id).sort(+Message.created_at, +Message.id).skip(offset).limit(limit).to_list()
    return items, total


async def mark_read(principal: Principal, application_id: PydanticObjectId) -> int:
    """Mark everything the caller received in this thread as read. Returns how many changed."""
    application, _, _ = await _load_thread(principal, application_id)
    result = await Message.find(
        Message.application_id == application.id,
        Message.recipient_id == PydanticObjectId(principal.user_id),
        Message.read == False,  # noqa: E712
    ).update(Set({"read": True, "read_at": datetime.utcnow()}))
    return getattr(result, "modified_count", 0) if result is not None else 0


async def unread_count(principal: Principal) -> int:
    return await Message.find(
        Message.recipient_id == PydanticObjectId(principal.user_id),
        Message.read == False,  # noqa: E712
    ).count()


async def list_conversations(principal: Principal, limit: int = 20) -> list[dict[str, Any]]:
    """One entry per application thread the caller is part of, most recent activity first."""
    uid = PydanticObjectId(principal.user_id)
    messages = await Message.find(Or(Message.sender_id == uid, Message.recipient_id == uid)).sort(-Message.created_at, -Message.id).to_list()
    threads: dict[PydanticObjectId, dict[str, Any]] = {}
    for m in messages:
        thread = threads.get(m.application_id)
        if thread is None:
            if len(threads) >= limit:
                continue
            thread = threads[m.application_id] = {
                "application_id": str(m.application_id),
                "job_id": str(m.job_id),
                "counterpart_id": str(m.recipient_id if m.sender_id == uid else m.sender_id),
                "last_message": message_to_dict(m),
                "unread": 0,
            }
        if m.recipient_id == uid and not m.read:
            thread["unread"] += 1
    return list(threads.values())


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": str(message.id),
        "application_id": str(message.application_id),
        "job_id": str(message.job_id),
        "sender_id": str(message.sender_id),
        "recipient_id": str(message.recipient_id),
        "content": message.content,
        "read": message.read,
        "read_at": message.read_at.isoformat() if message.read_at else None,
        "created_at": message.created_at.isoformat(),
    }
