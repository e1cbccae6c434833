from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError
from app.core.pagination import page_of, paginate
from app.core.security import Principal
from app.deps import get_principal, parse_object_id
from app.services import applications as applications_service
from app.services import messages as messages_service

router = APIRouter()


class ApplicationUpdate(BaseModel):
    status: Literal["shortlisted", "accepted", "rejected", "withdrawn"] | None = None
    note: str | None = Field(default=None, max_length=500)
    withdrawal_reason: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


@router.get("")
async def applications_list(
    principal: Principal = Depends(get_principal),
    status: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Tradespeople see their own applications, customers those on their jobs, admins all."""
    limit, offset = paginate(limit, offset)
    items, total = await applications_service.list_applications(principal, status=status, limit=limit, offset=offset)
    return page_of([applications_service.application_to_dict(a) for a in items], limit, offset, total)


@router.get("/{application_id}")
async def application_get(application_id: str, principal: Principal = Depends(get_principal)):
    application = await applications_service.get_application(principal, parse_object_id(application_id, "application id"))
    return applications_service.application_to_dict(application)


@router.patch("/{application_id}")
async def application_update(
    application_id: str,
    body: ApplicationUpdate,
    principal: Principal = Depends(get_principal),
):
    """Change status (owner: shortlist/accept/reject, applicant: withdraw) and/or notes."""
    app_id = parse_object_id(application_id, "application id")
    if body.status is None and body.notes is None:
        raise BadRequestError("Nothing to update")
    application = None
    if body.status == "withdrawn":
        application = await applications_service.withdraw(principal, app_id, body.withdrawal_reason)
    elif body.status is not None:
        application = await applications_service.update_status(principal, app_id, body.status, note=body.note)
    if body.notes is not None:
        application = await applications_service.update_notes(principal, app_id, body.notes)
    return applications_service.application_to_dict(application)


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


@router.get("/{application_id}/messages")
async def application_messages(
    application_id: str,
    principal: Principal = Depends(get_principal),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Conversation between the job owner and the applicant, oldest first."""
    items, total = await messages_service.list_messages(
        principal, parse_object_id(application_id, "application id"), limit=limit, offset=offset
    )
    return page_of([messages_service.message_to_dict(m) for m in items], limit, offset, total)


@router.post("/{application_id}/messages")
async def application_message_send(
    application_id: str,
    body: MessageCreate,
    principal: Principal = Depends(get_principal),
):
    message = await messages_service.send_message(principal, parse_object_id(application_id, "application id"), body.content)
    return messages_service.message_to_dict(message)


@router.post("/{application_id}/messages/read")
async def application_messages_read(application_id: str, principal: Principal = Depends(get_principal)):
    updated = await messages_service.mark_read(principal, parse_object_id(application_id, "application id"))
    return {"success": True, "updated_count": updated}
