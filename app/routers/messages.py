from fastapi import APIRouter, Depends, Query

from app.core.security import Principal
from app.deps import get_principal
from app.services import messages as messages_service

router = APIRouter()


@router.get("/unread")
async def messages_unread(principal: Principal = Depends(get_principal)):
    return {"count": await messages_service.unread_count(principal)}


@router.get("/conversations")
async def messages_conversations(
    principal: Principal = Depends(get_principal),
    limit: int = Query(20, ge=1, le=100),
):
    """Application threads the caller takes part in, latest activity first."""
    return {"conversations": await messages_service.list_conversations(principal, limit=limit)}
