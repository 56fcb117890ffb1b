from fastapi import APIRouter, Depends

from app.deps import get_current_account
from app.models.account import Account
from app.services import accounts as accounts_service

router = APIRouter()


@router.get("/me")
async def account_me(account: Account = Depends(get_current_account)):
    """Return current account. Requires session cookie."""
    return accounts_service.serialize_account(account)
