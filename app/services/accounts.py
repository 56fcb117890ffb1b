"""Accounts: creation with starter credits, tier and abuse flag management, referral bonus."""

from datetime import datetime
from typing import Any

from beanie.operators import Inc, LT
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, NotFoundError, fail_closed
from app.core.logging import get_logger
from app.models.account import TIERS, Account, tier_config

log = get_logger(__name__)

ROLES = ("user", "admin")


async def get_account(account_id: str) -> Account:
    """Load an account. Raises BadRequestError for an empty id, NotFoundError if missing."""
    if not account_id:
        raise BadRequestError("Account ID is required")
    account = await Account.get(account_id)
    if not account:
        raise NotFoundError("Account not found")
    return account


def serialize_account(account: Account) -> dict[str, Any]:
    tier = tier_config(account.tier)
    return {
        "id": account.id,
        "credit_balance": account.credit_balance,
        "tier": account.tier,
        "tier_multiplier": tier["multiplier"],
        "daily_claim_amount": tier["daily_claim"],
        "role": account.role,
        "is_flagged": account.is_flagged,
        "last_daily_claim": account.last_daily_claim.isoformat() if account.last_daily_claim else None,
        "referral_count": account.referral_count,
        "created_at": account.created_at.isoformat(),
    }


@fail_closed
async def create_account(account_id: str | None = None, tier: str = "free", role: str = "user") -> Account:
    """Create an account and grant starter credits through the ledger."""
    from app.models.credit_transaction import STARTER
    from app.services import ledger

    if tier not in TIERS:
        raise BadRequestError(f"Invalid tier: {tier}")
    if role not in ROLES:
        raise BadRequestError(f"Invalid role: {role}")
    account = Account(tier=tier, role=role)
    if account_id:
        account.id = account_id
    try:
        await account.insert()
    except DuplicateKeyError as e:
        raise ConflictError("Account already exists", details={"account_id": account_id}) from e
    starter = get_settings().starter_credits
    if starter > 0:
        await ledger.credit(
            account.id,
            starter,
            STARTER,
            idempotency_key=f"starter:{account.id}",
            description="Starter credits",
        )
    log.info("account_created", account_id=account.id, tier=tier, starter_credits=starter)
    return await get_account(account.id)


@fail_closed
async def set_tier(account_id: str, tier: str) -> Account:
    if tier not in TIERS:
        raise BadRequestError(f"Invalid tier: {tier}")
    account = await get_account(account_id)
    account.tier = tier
    account.updated_at = datetime.utcnow()
    await account.save()
    log.info("account_tier_changed", account_id=account_id, tier=tier)
    return account


@fail_closed
async def set_flagged(account_id: str, flagged: bool) -> Account:
    account = await get_account(account_id)
    account.is_flagged = flagged
    account.updated_at = datetime.utcnow()
    await account.save()
    log.info("account_flag_changed", account_id=account_id, is_flagged=flagged)
    return account


@fail_closed
async def grant_referral_bonus(referrer_id: str, referee_id: str) -> dict[str, Any]:
    """
    Credit the referrer once per referee, up to max_referrals rewarded referrals.
    Returns {"status": "granted" | "already_granted" | "limit_reached", ...}.
    """
    from app.models.credit_transaction import REFERRAL
    from app.services import ledger

    if referrer_id == referee_id:
        raise BadRequestError("Cannot refer yourself")
    settings = get_settings()
    await get_account(referee_id)
    referrer = await get_account(referrer_id)
    key = f"referral:{referee_id}"
    if await ledger.transaction_exists(key):
        return {"status": "already_granted", "referral_count": referrer.referral_count}
    # slot first: the counter bounds rewards even under concurrent referrals
    slot = await Account.find_one(
        Account.id == referrer_id,
        LT(Account.referral_count, settings.max_referrals),
    ).update(Inc({Account.referral_count: 1}))
    if not slot or not slot.modified_count:
        return {"status": "limit_reached", "referral_count": referrer.referral_count}
    result = await ledger.credit(
        referrer_id,
        settings.referral_credits,
        REFERRAL,
        idempotency_key=key,
        description="Referral bonus",
        reference=referee_id,
    )
    if result["duplicate"]:
        await Account.find_one(Account.id == referrer_id).update(Inc({Account.referral_count: -1}))
        return {"status": "already_granted", "referral_count": referrer.referral_count}
    log.info("referral_bonus_granted", referrer_id=referrer_id, referee_id=referee_id)
    return {
        "status": "granted",
        "amount": settings.referral_credits,
        "new_balance": result["new_balance"],
        "referral_count": referrer.referral_count + 1,
    }
