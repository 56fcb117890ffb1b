from datetime import datetime

from fastapi import APIRouter, Depends, Query

from app.deps import get_current_account
from app.models.account import Account
from app.services import daily_claim as daily_claim_service
from app.services import ledger

router = APIRouter()


@router.get("/balance")
async def credits_balance(account: Account = Depends(get_current_account)):
    """Return current credit balance."""
    balance = await ledger.get_balance(account.id)
    return {"balance": balance}


@router.get("/summary")
async def credits_summary(account: Account = Depends(get_current_account)):
    """Balance, tier, recent transactions and this month's spend/earn."""
    return await ledger.get_credit_summary(account.id)


@router.get("/transactions")
async def credits_transactions(
    account: Account = Depends(get_current_account),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
):
    """Transaction history for current account (newest first)."""
    return await ledger.get_transaction_history(
        account.id,
        limit=limit,
        offset=offset,
        tx_type=type,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/can-afford")
async def credits_can_afford(
    gateway_id: str = Query(..., min_length=1),
    outcome: str = Query("live"),
    account: Account = Depends(get_current_account),
):
    """Advisory: can the balance cover one more outcome of this class. Fails open."""
    return await ledger.can_afford(account.id, gateway_id, outcome)


@router.get("/check")
async def credits_check(
    gateway_id: str = Query(..., min_length=1),
    card_count: int = Query(...),
    account: Account = Depends(get_current_account),
):
    """Will the balance cover a batch of card_count cards at the dearer price. Warns, does not refuse."""
    return await ledger.check_sufficient_credits(account.id, gateway_id, card_count)


@router.get("/daily-claim")
async def daily_claim_status(account: Account = Depends(get_current_account)):
    return await daily_claim_service.check_eligibility(account.id)


@router.post("/daily-claim")
async def daily_claim(account: Account = Depends(get_current_account)):
    """Claim the tier's daily credits. AlreadyClaimed comes back as a result, not an error."""
    return await daily_claim_service.claim(account.id)
