from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, Query

from app.core.config import get_settings
from app.core.security import Principal
from app.deps import require_tradesperson
from app.services import ledger
from app.services import payments as payments_service

router = APIRouter()


@router.get("")
async def credits_summary(principal: Principal = Depends(require_tradesperson)):
    """Balance, lifetime spend and the most recent ledger entries."""
    account = await ledger.get_account(PydanticObjectId(principal.user_id))
    recent = await ledger.history(account.user_id, limit=10)
    return {
        "available": account.available,
        "spent": account.spent,
        "recent_transactions": [ledger.entry_to_dict(e) for e in recent],
    }


@router.get("/history")
async def credits_history(
    principal: Principal = Depends(require_tradesperson),
    limit: int | None = Query(None, ge=1, le=500),
):
    """Ledger entries, newest first."""
    limit = limit or get_settings().credit_history_limit
    entries = await ledger.history(PydanticObjectId(principal.user_id), limit=limit)
    return {"entries": [ledger.entry_to_dict(e) for e in entries], "limit": limit}


@router.get("/packages")
async def credit_packages():
    return {"packages": payments_service.list_packages()}
