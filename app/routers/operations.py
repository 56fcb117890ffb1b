from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from app.core.security import require_idempotency_key
from app.deps import get_current_account
from app.models.account import Account
from app.services import ledger
from app.services import operations as operations_service

router = APIRouter()


class AcquireRequest(BaseModel):
    operation_type: str = Field(..., min_length=1)
    card_count: int | None = Field(None, ge=0)
    gateway_id: str | None = None


class ReleaseRequest(BaseModel):
    status: str = "completed"


class UnitDebitRequest(BaseModel):
    gateway_id: str = Field(..., min_length=1)
    outcome: str
    reference: str | None = None


class SettleRequest(BaseModel):
    gateway_id: str = Field(..., min_length=1)
    approved: int = Field(0, ge=0)
    live: int = Field(0, ge=0)
    reference: str | None = None
    description: str | None = None


@router.post("/acquire")
async def operation_acquire(body: AcquireRequest, account: Account = Depends(get_current_account)):
    """Start a batch. Returns Locked (not an HTTP error) if another batch is running."""
    return await operations_service.acquire(
        account.id,
        body.operation_type,
        card_count=body.card_count,
        gateway_id=body.gateway_id,
    )


@router.post("/{operation_id}/release")
async def operation_release(
    operation_id: str,
    body: ReleaseRequest,
    account: Account = Depends(get_current_account),
):
    return await operations_service.release(account.id, operation_id, body.status)


@router.post("/stop")
async def operation_stop(account: Account = Depends(get_current_account)):
    """Stop every running batch of the current account."""
    return await operations_service.release_all_for_account(account.id, "failed")


@router.get("/active")
async def operation_active(account: Account = Depends(get_current_account)):
    return {"operations": await operations_service.get_active_operations(account.id)}


@router.post("/debit")
async def operation_debit_unit(
    body: UnitDebitRequest,
    account: Account = Depends(get_current_account),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Charge one outcome. should_stop tells the batch to halt."""
    return await ledger.debit_single_unit(
        account.id,
        body.gateway_id,
        body.outcome,
        idempotency_key=idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None,
        reference=body.reference,
    )


@router.post("/settle")
async def operation_settle(
    body: SettleRequest,
    account: Account = Depends(get_current_account),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Charge a finished batch by outcome counts. Requires Idempotency-Key."""
    key = require_idempotency_key(idempotency_key)
    return await ledger.debit_for_outcome_counts(
        account.id,
        body.gateway_id,
        {"approved": body.approved, "live": body.live},
        idempotency_key=key,
        description=body.description,
        reference=body.reference,
    )
