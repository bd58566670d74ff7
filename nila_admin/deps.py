"""Shared FastAPI dependencies."""

from functools import lru_cache

from fastapi import Request
from pydantic import BaseModel

from nila_admin.core.exceptions import ForbiddenError, UnauthorizedError
from nila_admin.core.security import load_session_cookie
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.base import get_stores

SESSION_COOKIE_NAME = "nila_admin_session"


class Operator(BaseModel):
    operator_id: str
    email: str = ""
    role: str = "admin"


async def get_current_operator(request: Request) -> Operator:
    """Dependency: load the signed session cookie and return the operator it names."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload or not payload.get("operator_id"):
        raise UnauthorizedError("Invalid or expired session")
    return Operator(**payload)


async def require_admin(request: Request) -> Operator:
    """Dependency: require the operator to have role admin."""
    operator = await get_current_operator(request)
    if operator.role != "admin":
        raise ForbiddenError("Admin only")
    return operator


@lru_cache
def get_settlement_service() -> SettlementService:
    return SettlementService.from_settings(get_stores())
