"""Credit ledger: the only writer of account balances and credit transactions.

Every balance change is appended as a CreditTransaction numbered per account.
Row N can only be inserted once (unique (account_id, seq)), so two writers that
read the same head cannot both commit; the loser re-reads and retries. This
keeps balance_after[N] == balance_after[N-1] + amount[N] across processes
without multi-document transactions. Account.credit_balance is a projection of
the newest row.

Idempotency keys are enforced by a unique index; the lookup before insert is
only an early return.
"""

import asyncio
import math
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from beanie.operators import GTE, LT, LTE, Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.exceptions import (
    BackendUnavailableError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    fail_closed,
)
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.models.account import Account, tier_config
from app.models.credit_transaction import REFUND, TRANSACTION_TYPES, USAGE, CreditTransaction
from app.services import pricing as pricing_service
from app.services.accounts import get_account

log = get_logger(__name__)

APPROVED = pricing_service.APPROVED
LIVE = pricing_service.LIVE
BILLABLE_OUTCOMES = (APPROVED, LIVE)

INSUFFICIENT_CREDIT = "InsufficientCredit"


class _InsufficientBalance(Exception):
    def __init__(self, balance: int):
        self.balance = balance
        super().__init__(balance)


def calculate_credit_cost(pricing: dict[str, int] | None, outcome_class: str) -> int:
    """Cost of one outcome. Only approved and live are billable; any other outcome is free."""
    outcome = (outcome_class or "").strip().lower()
    if outcome not in BILLABLE_OUTCOMES:
        return 0
    value = (pricing or {}).get(outcome)
    return value if value is not None else pricing_service.default_pricing()[outcome]


def calculate_batch_cost(pricing: dict[str, int] | None, counts: dict[str, int]) -> int:
    return (
        counts.get(APPROVED, 0) * calculate_credit_cost(pricing, APPROVED)
        + counts.get(LIVE, 0) * calculate_credit_cost(pricing, LIVE)
    )


def _parse_counts(counts: dict[str, Any] | None) -> dict[str, int]:
    out = {}
    for key in BILLABLE_OUTCOMES:
        value = (counts or {}).get(key) or 0
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise BadRequestError(f"Count for {key} must be a non-negative integer", details={key: value})
        out[key] = value
    return out


def _parse_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise BadRequestError("Amount must be a number", details={"amount": amount})
    if not math.isfinite(amount) or amount <= 0:
        raise BadRequestError("Amount must be a positive finite number", details={"amount": amount})
    if amount != int(amount):
        raise BadRequestError("Amount must be a whole number of credits", details={"amount": amount})
    return int(amount)


async def _head(account_id: str) -> tuple[int, int]:
    """(seq, balance_after) of the newest transaction; (0, 0) for an empty ledger."""
    last = (
        await CreditTransaction.find(CreditTransaction.account_id == account_id)
        .sort(-CreditTransaction.seq)
        .first_or_none()
    )
    if last is None:
        return 0, 0
    return last.seq, last.balance_after


async def _find_by_key(idempotency_key: str) -> CreditTransaction | None:
    return await CreditTransaction.find_one(CreditTransaction.idempotency_key == idempotency_key)


async def transaction_exists(idempotency_key: str) -> bool:
    return await _find_by_key(idempotency_key) is not None


def _check_key_owner(existing: CreditTransaction, account_id: str) -> None:
    if existing.account_id != account_id:
        raise ConflictError(
            "Idempotency key already used by another account",
            details={"idempotency_key": existing.idempotency_key},
        )


async def _recorded(idempotency_key: str | None, account_id: str) -> CreditTransaction | None:
    """The transaction already written under this key, if any."""
    if not idempotency_key:
        return None
    existing = await _find_by_key(idempotency_key)
    if existing is not None:
        _check_key_owner(existing, account_id)
    return existing


async def _append(
    account_id: str,
    amount: int,
    tx_type: str,
    *,
    idempotency_key: str | None = None,
    **fields: Any,
) -> tuple[CreditTransaction, int, bool]:
    """
    Append one transaction at head+1 and move the balance projection.
    Returns (transaction, previous_balance, duplicate).
    Raises _InsufficientBalance if the result would be negative.
    """
    settings = get_settings()
    for attempt in range(settings.ledger_max_retries):
        seq, balance = await _head(account_id)
        new_balance = balance + amount
        if new_balance < 0:
            # a retry of a debit that already went through must not read as exhausted
            existing = await _recorded(idempotency_key, account_id)
            if existing is not None:
                return existing, existing.balance_after - existing.amount, True
            raise _InsufficientBalance(balance)
        tx = CreditTransaction(
            account_id=account_id,
            seq=seq + 1,
            amount=amount,
            balance_after=new_balance,
            type=tx_type,
            idempotency_key=idempotency_key,
            **fields,
        )
        try:
            await tx.insert()
        except DuplicateKeyError:
            existing = await _recorded(idempotency_key, account_id)
            if existing is not None:
                return existing, existing.balance_after - existing.amount, True
            log.info("ledger_seq_conflict", account_id=account_id, seq=seq + 1, attempt=attempt + 1)
            if attempt + 1 < settings.ledger_max_retries:
                await asyncio.sleep(settings.ledger_retry_backoff_ms / 1000 * (2**attempt))
            continue
        await Account.find_one(Account.id == account_id, LT(Account.ledger_seq, tx.seq)).update(
            Set(
                {
                    Account.credit_balance: new_balance,
                    Account.ledger_seq: tx.seq,
                    Account.updated_at: datetime.utcnow(),
                }
            )
        )
        return tx, balance, False
    log.warning("ledger_retries_exhausted", account_id=account_id, amount=amount, type=tx_type)
    raise ConflictError(
        "Balance was modified concurrently; retries exhausted",
        details={"account_id": account_id, "retries": settings.ledger_max_retries},
    )


def _insufficient(balance: int, cost: int, pricing: dict[str, int], message: str) -> dict[str, Any]:
    return {
        "success": False,
        "error": INSUFFICIENT_CREDIT,
        "message": message,
        "current_balance": balance,
        "required_credits": cost,
        "pricing": pricing,
    }


def _batch_result(tx: CreditTransaction, previous: int, duplicate: bool) -> dict[str, Any]:
    return {
        "success": True,
        "transaction_id": str(tx.id),
        "credits_deducted": -tx.amount,
        "previous_balance": previous,
        "new_balance": tx.balance_after,
        "approved_count": tx.approved_count,
        "live_count": tx.live_count,
        "pricing": tx.pricing,
        "duplicate": duplicate,
    }


def _unit_result(tx: CreditTransaction, previous: int, duplicate: bool, outcome: str) -> dict[str, Any]:
    return {
        "success": True,
        "transaction_id": str(tx.id),
        "credits_deducted": -tx.amount,
        "previous_balance": previous,
        "new_balance": tx.balance_after,
        "outcome_class": outcome,
        "should_stop": False,
        "duplicate": duplicate,
    }


def serialize_transaction(tx: CreditTransaction) -> dict[str, Any]:
    return {
        "id": str(tx.id),
        "seq": tx.seq,
        "amount": tx.amount,
        "balance_after": tx.balance_after,
        "type": tx.type,
        "gateway_id": tx.gateway_id,
        "pricing": tx.pricing,
        "approved_count": tx.approved_count,
        "live_count": tx.live_count,
        "description": tx.description,
        "reference": tx.reference,
        "created_at": tx.created_at.isoformat(),
    }


@fail_closed
async def get_balance(account_id: str) -> int:
    """Return the current balance. Raises NotFoundError for unknown accounts."""
    account = await get_account(account_id)
    seq, balance = await _head(account_id)
    if seq > account.ledger_seq:
        # projection lags if a writer stopped between insert and update
        return balance
    return account.credit_balance


@fail_closed
async def credit(
    account_id: str,
    amount: int,
    tx_type: str,
    *,
    idempotency_key: str | None = None,
    description: str | None = None,
    reference: str | None = None,
) -> dict[str, Any]:
    """
    Add credits. Returns transaction_id, previous_balance, new_balance, duplicate.
    A repeated idempotency_key returns the first result and changes nothing.
    """
    amount = _parse_amount(amount)
    if tx_type not in TRANSACTION_TYPES or tx_type == USAGE:
        raise BadRequestError(f"Invalid credit type: {tx_type}")
    await get_account(account_id)
    existing = await _recorded(idempotency_key, account_id)
    if existing is not None:
        return {
            "transaction_id": str(existing.id),
            "previous_balance": existing.balance_after - existing.amount,
            "new_balance": existing.balance_after,
            "duplicate": True,
        }
    tx, previous, duplicate = await _append(
        account_id,
        amount,
        tx_type,
        idempotency_key=idempotency_key,
        description=description,
        reference=reference,
    )
    if not duplicate:
        log.info("credit_applied", account_id=account_id, amount=amount, type=tx_type, balance_after=tx.balance_after)
    return {
        "transaction_id": str(tx.id),
        "previous_balance": previous,
        "new_balance": tx.balance_after,
        "duplicate": duplicate,
    }


@fail_closed
async def debit_for_outcome_counts(
    account_id: str,
    gateway_id: str,
    counts: dict[str, int],
    *,
    idempotency_key: str | None = None,
    description: str | None = None,
    reference: str | None = None,
) -> dict[str, Any]:
    """
    Charge a finished batch: approved * price_approved + live * price_live.
    Insufficient credit is returned as a result, not raised; the caller stops the batch.
    """
    if not gateway_id:
        raise BadRequestError("Gateway ID is required")
    parsed = _parse_counts(counts)
    await get_account(account_id)
    existing = await _recorded(idempotency_key, account_id)
    if existing is not None:
        return _batch_result(existing, existing.balance_after - existing.amount, True)
    pricing = await pricing_service.get_pricing(gateway_id)
    cost = calculate_batch_cost(pricing, parsed)
    if cost == 0:
        balance = await get_balance(account_id)
        return {
            "success": True,
            "transaction_id": None,
            "credits_deducted": 0,
            "previous_balance": balance,
            "new_balance": balance,
            "approved_count": parsed[APPROVED],
            "live_count": parsed[LIVE],
            "pricing": pricing,
            "duplicate": False,
        }
    try:
        tx, previous, duplicate = await _append(
            account_id,
            -cost,
            USAGE,
            idempotency_key=idempotency_key,
            gateway_id=gateway_id,
            pricing=pricing,
            approved_count=parsed[APPROVED],
            live_count=parsed[LIVE],
            description=description
            or f"{parsed[APPROVED]} approved + {parsed[LIVE]} live via {gateway_id} ({cost} credits)",
            reference=reference,
        )
    except _InsufficientBalance as e:
        log.info("debit_insufficient", account_id=account_id, gateway_id=gateway_id, balance=e.balance, cost=cost)
        return _insufficient(e.balance, cost, pricing, "Insufficient credits")
    if not duplicate:
        log.info(
            "batch_debited",
            account_id=account_id,
            gateway_id=gateway_id,
            cost=cost,
            balance_after=tx.balance_after,
        )
    return _batch_result(tx, previous, duplicate)


@fail_closed
async def debit_single_unit(
    account_id: str,
    gateway_id: str,
    outcome_class: str,
    *,
    idempotency_key: str | None = None,
    reference: str | None = None,
) -> dict[str, Any]:
    """
    Charge one outcome as soon as it is known so a batch can stop on the next item.
    should_stop is set when the balance cannot cover this outcome.
    """
    if not gateway_id:
        raise BadRequestError("Gateway ID is required")
    outcome = (outcome_class or "").strip().lower()
    await get_account(account_id)
    existing = await _recorded(idempotency_key, account_id)
    if existing is not None:
        return _unit_result(existing, existing.balance_after - existing.amount, True, outcome)
    pricing = await pricing_service.get_pricing(gateway_id)
    cost = calculate_credit_cost(pricing, outcome)
    if cost == 0:
        balance = await get_balance(account_id)
        return {
            "success": True,
            "transaction_id": None,
            "credits_deducted": 0,
            "previous_balance": balance,
            "new_balance": balance,
            "outcome_class": outcome,
            "should_stop": False,
            "duplicate": False,
        }
    try:
        tx, previous, duplicate = await _append(
            account_id,
            -cost,
            USAGE,
            idempotency_key=idempotency_key,
            gateway_id=gateway_id,
            pricing=pricing,
            approved_count=1 if outcome == APPROVED else 0,
            live_count=1 if outcome == LIVE else 0,
            description=f"1 {outcome} via {gateway_id} ({cost} credits)",
            reference=reference,
        )
    except _InsufficientBalance as e:
        log.info("unit_debit_insufficient", account_id=account_id, gateway_id=gateway_id, balance=e.balance, cost=cost)
        result = _insufficient(e.balance, cost, pricing, "Credits exhausted - stopping batch")
        result["should_stop"] = True
        return result
    return _unit_result(tx, previous, duplicate, outcome)


async def can_afford(account_id: str, gateway_id: str, outcome_class: str = LIVE) -> dict[str, Any]:
    """
    Advisory check before processing the next item. Never writes.
    Fails open: when the backend is unreachable the answer is can_continue=True
    with fail_open=True, so callers must still settle through a debit.
    """
    try:
        pricing = await pricing_service.get_pricing(gateway_id)
        cost = calculate_credit_cost(pricing, outcome_class)
        balance = await get_balance(account_id)
    except BackendUnavailableError as e:
        log.warning("can_afford_fail_open", account_id=account_id, gateway_id=gateway_id, error=str(e))
        return {"can_continue": True, "balance": None, "cost": None, "shortfall": 0, "fail_open": True}
    return {
        "can_continue": balance >= cost,
        "balance": balance,
        "cost": cost,
        "shortfall": max(cost - balance, 0),
        "fail_open": False,
    }


@fail_closed
async def check_sufficient_credits(account_id: str, gateway_id: str, card_count: int) -> dict[str, Any]:
    """
    Pre-flight estimate for a batch, charging every card at the dearer billable price.
    A shortfall is reported with a warning, not refused; the batch is still metered per outcome.
    """
    if isinstance(card_count, bool) or not isinstance(card_count, int) or card_count <= 0:
        raise BadRequestError("No cards provided", details={"card_count": card_count, "reason": "NO_CARDS"})
    pricing = await pricing_service.require_active_gateway(gateway_id)
    account = await get_account(account_id)
    balance = await get_balance(account_id)
    required = card_count * max(calculate_credit_cost(pricing, APPROVED), calculate_credit_cost(pricing, LIVE))
    out = {
        "sufficient": balance >= required,
        "current_balance": balance,
        "required_credits": required,
        "card_count": card_count,
        "pricing": pricing,
        "tier": account.tier,
        "warning": None,
    }
    if not out["sufficient"]:
        out["warning"] = (
            f"Balance of {balance} credits may not cover {card_count} cards "
            f"(up to {required} credits); the batch stops when credits run out"
        )
        log.info(
            "credit_check_insufficient",
            account_id=account_id,
            gateway_id=gateway_id,
            balance=balance,
            required=required,
        )
    return out


@fail_closed
async def refund_transaction(account_id: str, transaction_id: str, *, reason: str | None = None) -> dict[str, Any]:
    """Credit back a usage transaction. Each usage transaction is refunded at most once."""
    try:
        tx = await CreditTransaction.get(PydanticObjectId(transaction_id))
    except (InvalidId, TypeError):
        tx = None
    if not tx or tx.account_id != account_id:
        raise NotFoundError("Transaction not found")
    if tx.type != USAGE or tx.amount >= 0:
        raise BadRequestError("Only usage transactions can be refunded")
    return await credit(
        account_id,
        -tx.amount,
        REFUND,
        idempotency_key=f"refund:{tx.id}",
        description=reason or f"Refund of {tx.description or tx.id}",
        reference=str(tx.id),
    )


@fail_closed
async def get_transaction_history(
    account_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    tx_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict[str, Any]:
    """Newest-first page of an account's transactions."""
    limit, offset = paginate(limit, offset)
    await get_account(account_id)
    query = CreditTransaction.find(CreditTransaction.account_id == account_id)
    if tx_type:
        if tx_type not in TRANSACTION_TYPES:
            raise BadRequestError(f"Invalid transaction type: {tx_type}")
        query = query.find(CreditTransaction.type == tx_type)
    if start_date:
        query = query.find(GTE(CreditTransaction.created_at, start_date))
    if end_date:
        query = query.find(LTE(CreditTransaction.created_at, end_date))
    total = await query.count()
    rows = await query.sort(-CreditTransaction.seq).skip(offset).limit(limit).to_list()
    return {
        "transactions": [serialize_transaction(t) for t in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(rows) < total,
    }


@fail_closed
async def get_credit_summary(account_id: str, now: datetime | None = None) -> dict[str, Any]:
    account = await get_account(account_id)
    now = now or datetime.utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    recent = (
        await CreditTransaction.find(CreditTransaction.account_id == account_id)
        .sort(-CreditTransaction.seq)
        .limit(5)
        .to_list()
    )
    monthly = await CreditTransaction.find(
        CreditTransaction.account_id == account_id,
        GTE(CreditTransaction.created_at, month_start),
    ).to_list()
    tier = tier_config(account.tier)
    return {
        "balance": await get_balance(account_id),
        "tier": account.tier,
        "tier_multiplier": tier["multiplier"],
        "daily_claim_amount": tier["daily_claim"],
        "last_daily_claim": account.last_daily_claim.isoformat() if account.last_daily_claim else None,
        "recent_transactions": [serialize_transaction(t) for t in recent],
        "monthly_spent": sum(-t.amount for t in monthly if t.amount < 0),
        "monthly_earned": sum(t.amount for t in monthly if t.amount > 0),
    }
