from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.exceptions import BadRequestError
from app.core.security import require_idempotency_key
from app.deps import get_redis, require_admin
from app.models.account import Account
from app.models.credit_transaction import BONUS, PURCHASE
from app.services import accounts as accounts_service
from app.services import ledger
from app.services import operations as operations_service
from app.services import pricing as pricing_service

router = APIRouter()

GRANT_TYPES = (BONUS, PURCHASE)


class PricingUpdateRequest(BaseModel):
    pricing_approved: int | None = Field(None, ge=0)
    pricing_live: int | None = Field(None, ge=0)
    is_active: bool | None = None


class GrantRequest(BaseModel):
    amount: int = Field(..., gt=0)
    type: str = BONUS
    description: str | None = None
    reference: str | None = None


class FlagRequest(BaseModel):
    flagged: bool


class TierRequest(BaseModel):
    tier: str


class RefundRequest(BaseModel):
    account_id: str
    reason: str | None = None


@router.get("/gateways")
async def admin_gateways(admin: Account = Depends(require_admin)):
    """Admin: gateway pricing as stored and as resolved."""
    return {"gateways": await pricing_service.list_gateway_pricing()}


@router.put("/gateways/{gateway_id}/pricing")
async def admin_gateway_pricing(
    gateway_id: str,
    body: PricingUpdateRequest,
    admin: Account = Depends(require_admin),
    redis=Depends(get_redis),
):
    """Admin: change pricing or switch the gateway off; invalidates every instance's cache."""
    out = await pricing_service.set_gateway_pricing(
        gateway_id,
        body.pricing_approved,
        body.pricing_live,
        redis=redis,
        is_active=body.is_active,
    )
    await log_event(admin.id, "gateway_pricing_updated", "gateway", gateway_id, body.model_dump())
    return out


@router.post("/accounts/{account_id}/stop")
async def admin_stop_batch(account_id: str, admin: Account = Depends(require_admin)):
    """Admin: stop any running batch for an account."""
    out = await operations_service.release_all_for_account(account_id, "failed")
    await log_event(admin.id, "batch_stopped", "account", account_id, {"released": out["released"]})
    return out


@router.post("/accounts/{account_id}/credits")
async def admin_grant_credits(
    account_id: str,
    body: GrantRequest,
    admin: Account = Depends(require_admin),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Admin: grant bonus or purchased credits. Requires Idempotency-Key."""
    key = require_idempotency_key(idempotency_key)
    if body.type not in GRANT_TYPES:
        raise BadRequestError(f"Grant type must be one of {', '.join(GRANT_TYPES)}")
    out = await ledger.credit(
        account_id,
        body.amount,
        body.type,
        idempotency_key=key,
        description=body.description,
        reference=body.reference,
    )
    if not out["duplicate"]:
        await log_event(admin.id, "credits_granted", "account", account_id, {"amount": body.amount, "type": body.type})
    return out


@router.post("/accounts/{account_id}/flag")
async def admin_flag_account(account_id: str, body: FlagRequest, admin: Account = Depends(require_admin)):
    account = await accounts_service.set_flagged(account_id, body.flagged)
    await log_event(admin.id, "account_flagged" if body.flagged else "account_unflagged", "account", account_id)
    return accounts_service.serialize_account(account)


@router.post("/accounts/{account_id}/tier")
async def admin_set_tier(account_id: str, body: TierRequest, admin: Account = Depends(require_admin)):
    account = await accounts_service.set_tier(account_id, body.tier)
    await log_event(admin.id, "account_tier_changed", "account", account_id, {"tier": body.tier})
    return accounts_service.serialize_account(account)


@router.post("/transactions/{transaction_id}/refund")
async def admin_refund(transaction_id: str, body: RefundRequest, admin: Account = Depends(require_admin)):
    """Admin: refund a usage transaction (at most once)."""
    out = await ledger.refund_transaction(body.account_id, transaction_id, reason=body.reason)
    if not out["duplicate"]:
        await log_event(
            admin.id, "transaction_refunded", "credit_transaction", transaction_id, {"account_id": body.account_id}
        )
    return out


@router.post("/operations/sweep")
async def admin_sweep(admin: Account = Depends(require_admin)):
    """Admin: mark stale running operations now instead of waiting for the worker."""
    return {"marked_stale": await operations_service.sweep_stale()}


@router.post("/operations/cleanup")
async def admin_cleanup(admin: Account = Depends(require_admin)):
    return {"deleted": await operations_service.cleanup()}


class CreateAccountRequest(BaseModel):
    account_id: str | None = None
    tier: str = "free"
    role: str = "user"


class ReferralRequest(BaseModel):
    referrer_id: str
    referee_id: str


@router.post("/accounts")
async def admin_create_account(body: CreateAccountRequest, admin: Account = Depends(require_admin)):
    """Admin: provision an account with starter credits."""
    account = await accounts_service.create_account(body.account_id, tier=body.tier, role=body.role)
    await log_event(admin.id, "account_created", "account", account.id, {"tier": body.tier, "role": body.role})
    return accounts_service.serialize_account(account)


@router.post("/referrals")
async def admin_referral_bonus(body: ReferralRequest, admin: Account = Depends(require_admin)):
    """Admin: reward a referrer for a referee (once per referee, capped per referrer)."""
    return await accounts_service.grant_referral_bonus(body.referrer_id, body.referee_id)
