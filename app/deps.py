"""Shared FastAPI dependencies."""

from fastapi import Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_account_id
from app.core.security import load_session_cookie
from app.models.account import Account

SESSION_COOKIE_NAME = "creditmeter_session"


async def get_current_account(request: Request) -> Account:
    """Dependency: load session from cookie and return the Account. Flagged accounts are refused."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    account = await Account.get(account_id)
    if not account:
        raise UnauthorizedError("Account not found")
    if account.is_flagged:
        raise ForbiddenError("Account is flagged")
    bind_account_id(account.id)
    return account


async def require_admin(request: Request) -> Account:
    """Dependency: require current account to have role admin."""
    account = await get_current_account(request)
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account


def get_redis(request: Request):
    """Redis client set up at startup, or None when Redis is not reachable."""
    return getattr(request.app.state, "redis", None)
