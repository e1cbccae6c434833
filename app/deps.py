"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Depends, Request

from app.core.exceptions import BadRequestError, ForbiddenError, UnauthorizedError
from app.core.logging import bind_principal
from app.core.security import Principal, load_session_cookie
from app.models.user import User

SESSION_COOKIE_NAME = "tradeboard_session"


async def get_principal(request: Request) -> Principal:
    """Dependency: load session from cookie and return the caller's {user_id, role}."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    try:
        user = await User.get(PydanticObjectId(user_id))
    except InvalidId:
        raise UnauthorizedError("Invalid session")
    if not user or not user.is_active:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_principal(str(user.id), user.role)
    return Principal(user_id=str(user.id), role=user.role)


async def get_optional_principal(request: Request) -> Principal | None:
    """Like get_principal, but anonymous callers get None instead of a 401."""
    if not request.cookies.get(SESSION_COOKIE_NAME):
        return None
    return await get_principal(request)


def require_role(*roles: str):
    """Dependency factory: caller must hold one of the given roles."""

    async def _dep(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise ForbiddenError(f"Only {' or '.join(roles)} accounts can do this")
        return principal

    return _dep


require_admin = require_role("admin")
require_tradesperson = require_role("tradesperson")


def parse_object_id(value: str, what: str = "id") -> PydanticObjectId:
    """Path/body id -> ObjectId; malformed ids are a 400, not a 500."""
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid {what} format")
