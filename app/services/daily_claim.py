"""Daily credit grant on a rolling window (20h by default), not a calendar-day reset."""

from datetime import datetime, timedelta
from typing import Any

from beanie.operators import LTE, Or, Set

from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, fail_closed
from app.core.logging import get_logger
from app.models.account import Account, tier_config
from app.models.credit_transaction import CLAIM
from app.services import ledger
from app.services.accounts import get_account

log = get_logger(__name__)

ALREADY_CLAIMED = "AlreadyClaimed"


def _window() -> timedelta:
    return timedelta(hours=get_settings().daily_claim_min_hours)


def _eligibility(account: Account, now: datetime) -> dict[str, Any]:
    amount = int(tier_config(account.tier)["daily_claim"])
    last = account.last_daily_claim
    if last is None:
        return {
            "can_claim": True,
            "claim_amount": amount,
            "next_claim_available": None,
            "hours_since_last_claim": None,
        }
    hours = (now - last).total_seconds() / 3600
    can_claim = hours >= get_settings().daily_claim_min_hours
    return {
        "can_claim": can_claim,
        "claim_amount": amount,
        "next_claim_available": None if can_claim else (last + _window()).isoformat(),
        "hours_since_last_claim": round(hours, 2),
    }


@fail_closed
async def check_eligibility(account_id: str, now: datetime | None = None) -> dict[str, Any]:
    """can_claim, claim_amount (tier based), next_claim_available."""
    account = await get_account(account_id)
    return _eligibility(account, now or datetime.utcnow())


@fail_closed
async def claim(account_id: str, now: datetime | None = None) -> dict[str, Any]:
    """
    Grant the tier's daily amount.
    The window is re-checked by a conditional update on last_daily_claim, so a caller's
    earlier eligibility check is never trusted and two concurrent claims cannot both pass.
    """
    now = now or datetime.utcnow()
    # BSON dates keep milliseconds; the restore below matches on this exact value
    now = now.replace(microsecond=now.microsecond // 1000 * 1000)
    account = await get_account(account_id)
    if account.is_flagged:
        raise ForbiddenError("Account is flagged")
    status = _eligibility(account, now)
    if not status["can_claim"]:
        return {"success": False, "error": ALREADY_CLAIMED, "next_claim_available": status["next_claim_available"]}

    previous_claim = account.last_daily_claim
    reserved = await Account.find_one(
        Account.id == account_id,
        Or(Account.last_daily_claim == None, LTE(Account.last_daily_claim, now - _window())),  # noqa: E711
    ).update(Set({Account.last_daily_claim: now}))
    if not reserved or not reserved.modified_count:
        fresh = await get_account(account_id)
        status = _eligibility(fresh, now)
        log.info("daily_claim_raced", account_id=account_id)
        return {"success": False, "error": ALREADY_CLAIMED, "next_claim_available": status["next_claim_available"]}

    try:
        result = await ledger.credit(
            account_id,
            status["claim_amount"],
            CLAIM,
            idempotency_key=f"claim:{account_id}:{now.isoformat()}",
            description="Daily free credits claim",
        )
    except Exception:
        # give the slot back so the account can retry
        await Account.find_one(Account.id == account_id, Account.last_daily_claim == now).update(
            Set({Account.last_daily_claim: previous_claim})
        )
        log.exception("daily_claim_failed", account_id=account_id)
        raise
    log.info("daily_claim_granted", account_id=account_id, amount=status["claim_amount"])
    return {
        "success": True,
        "amount": status["claim_amount"],
        "transaction_id": result["transaction_id"],
        "new_balance": result["new_balance"],
        "claimed_at": now.isoformat(),
        "next_claim_available": (now + _window()).isoformat(),
    }
