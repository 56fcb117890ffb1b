"""Per-account operation lock.

At most one ActiveOperation with status=running may exist per account. The
guarantee comes from the partial unique index on account_id (status=running):
acquire is insert-or-fail, so it holds across processes and instances. The
lookup before the insert only saves a round trip in the common locked case.
"""

from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import In, LT, Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, fail_closed
from app.core.logging import get_logger
from app.models.active_operation import (
    COMPLETED,
    FAILED,
    RUNNING,
    STALE,
    TERMINAL_STATUSES,
    ActiveOperation,
)
from app.services import pricing as pricing_service

log = get_logger(__name__)

LOCKED = "Locked"


def serialize_operation(op: ActiveOperation) -> dict[str, Any]:
    return {
        "id": str(op.id),
        "account_id": op.account_id,
        "operation_type": op.operation_type,
        "gateway_id": op.gateway_id,
        "status": op.status,
        "card_count": op.card_count,
        "started_at": op.started_at.isoformat(),
        "completed_at": op.completed_at.isoformat() if op.completed_at else None,
    }


def _locked(existing: ActiveOperation | None) -> dict[str, Any]:
    return {
        "success": False,
        "error": LOCKED,
        "message": "Another operation is already in progress",
        "existing_operation_id": str(existing.id) if existing else None,
        "existing_operation_type": existing.operation_type if existing else None,
    }


async def _running(account_id: str) -> ActiveOperation | None:
    return await ActiveOperation.find_one(
        ActiveOperation.account_id == account_id,
        ActiveOperation.status == RUNNING,
    )


@fail_closed
async def sweep_stale(account_id: str | None = None, now: datetime | None = None) -> int:
    """Mark running operations older than the stale threshold as stale. Returns how many."""
    now = now or datetime.utcnow()
    threshold = now - timedelta(seconds=get_settings().operation_stale_seconds)
    query = ActiveOperation.find(
        ActiveOperation.status == RUNNING,
        LT(ActiveOperation.started_at, threshold),
    )
    if account_id:
        query = query.find(ActiveOperation.account_id == account_id)
    result = await query.update(Set({ActiveOperation.status: STALE, ActiveOperation.completed_at: now}))
    count = result.modified_count if result else 0
    if count:
        log.info("operations_marked_stale", account_id=account_id, count=count)
    return count


@fail_closed
async def acquire(
    account_id: str,
    operation_type: str,
    *,
    card_count: int | None = None,
    gateway_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Start an operation for the account.
    Returns {success: True, operation_id} or a Locked result naming the running operation.
    A gateway that has been switched off is refused with BadRequestError.
    """
    if not account_id:
        raise BadRequestError("Account ID is required")
    if not operation_type:
        raise BadRequestError("Operation type is required")
    if card_count is not None and card_count < 0:
        raise BadRequestError("card_count must be non-negative")
    if gateway_id:
        await pricing_service.require_active_gateway(gateway_id)
    now = now or datetime.utcnow()
    # a crashed worker's lock is reclaimed before we look
    await sweep_stale(account_id, now)
    existing = await _running(account_id)
    if existing is not None:
        log.info("lock_busy", account_id=account_id, existing_operation_id=str(existing.id))
        return _locked(existing)
    op = ActiveOperation(
        account_id=account_id,
        operation_type=operation_type,
        gateway_id=gateway_id,
        status=RUNNING,
        card_count=card_count,
        started_at=now,
    )
    try:
        await op.insert()
    except DuplicateKeyError:
        existing = await _running(account_id)
        log.info("lock_contended", account_id=account_id, operation_type=operation_type)
        return _locked(existing)
    log.info("lock_acquired", account_id=account_id, operation_id=str(op.id), operation_type=operation_type)
    return {"success": True, "operation_id": str(op.id)}


@fail_closed
async def release(
    account_id: str,
    operation_id: str,
    status: str = COMPLETED,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Finish an operation. A row already swept or cleaned up is not an error."""
    if status not in (COMPLETED, FAILED):
        raise BadRequestError(f"Invalid release status: {status}")
    try:
        oid = PydanticObjectId(operation_id)
    except (InvalidId, TypeError) as e:
        raise BadRequestError("Invalid operation id") from e
    result = await ActiveOperation.find_one(
        ActiveOperation.id == oid,
        ActiveOperation.account_id == account_id,
    ).update(Set({ActiveOperation.status: status, ActiveOperation.completed_at: now or datetime.utcnow()}))
    released = bool(result and result.matched_count)
    if released:
        log.info("lock_released", account_id=account_id, operation_id=operation_id, status=status)
    else:
        log.info("lock_release_missing", account_id=account_id, operation_id=operation_id)
    return {"success": True, "released": released}


@fail_closed
async def release_all_for_account(
    account_id: str,
    status: str = FAILED,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Stop-batch: end every running operation of the account without knowing its id."""
    if not account_id:
        raise BadRequestError("Account ID is required")
    if status not in TERMINAL_STATUSES:
        raise BadRequestError(f"Invalid release status: {status}")
    result = await ActiveOperation.find(
        ActiveOperation.account_id == account_id,
        ActiveOperation.status == RUNNING,
    ).update(Set({ActiveOperation.status: status, ActiveOperation.completed_at: now or datetime.utcnow()}))
    count = result.modified_count if result else 0
    log.info("locks_released_for_account", account_id=account_id, status=status, count=count)
    return {"success": True, "released": count}


@fail_closed
async def cleanup(now: datetime | None = None) -> int:
    """Delete terminal operations older than the cleanup threshold. Housekeeping only."""
    now = now or datetime.utcnow()
    threshold = now - timedelta(seconds=get_settings().operation_cleanup_seconds)
    result = await ActiveOperation.find(
        In(ActiveOperation.status, list(TERMINAL_STATUSES)),
        LT(ActiveOperation.completed_at, threshold),
    ).delete()
    count = result.deleted_count if result else 0
    if count:
        log.info("operations_cleaned_up", count=count)
    return count


@fail_closed
async def get_active_operations(account_id: str, now: datetime | None = None) -> list[dict[str, Any]]:
    await sweep_stale(account_id, now)
    ops = await ActiveOperation.find(
        ActiveOperation.account_id == account_id,
        ActiveOperation.status == RUNNING,
    ).to_list()
    return [serialize_operation(op) for op in ops]


async def has_running_operation(account_id: str, now: datetime | None = None) -> bool:
    return bool(await get_active_operations(account_id, now))
