"""Credit ledger against the test MongoDB."""

import asyncio

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from app.core.exceptions import BackendUnavailableError, BadRequestError, ConflictError, NotFoundError
from app.models.account import Account
from app.models.credit_transaction import CreditTransaction
from app.services import ledger
from app.services import pricing as pricing_service

pytestmark = pytest.mark.asyncio


async def _transactions(account_id: str) -> list[CreditTransaction]:
    return (
        await CreditTransaction.find(CreditTransaction.account_id == account_id)
        .sort(+CreditTransaction.seq)
        .to_list()
    )


async def test_starter_credits(account):
    assert await ledger.get_balance(account.id) == 25
    txs = await _transactions(account.id)
    assert [(t.type, t.amount, t.balance_after) for t in txs] == [("starter", 25, 25)]


async def test_get_balance_unknown_account(db):
    with pytest.raises(NotFoundError):
        await ledger.get_balance("nobody")


async def test_credit_updates_balance_and_projection(account):
    out = await ledger.credit(account.id, 10, "bonus", description="welcome back")
    assert out["previous_balance"] == 25
    assert out["new_balance"] == 35
    assert out["duplicate"] is False
    stored = await Account.get(account.id)
    assert stored.credit_balance == 35
    assert stored.ledger_seq == 2


@pytest.mark.parametrize("amount", [0, -5, float("inf"), float("nan"), 2.5, "10", True])
async def test_credit_rejects_bad_amounts(account, amount):
    with pytest.raises(BadRequestError):
        await ledger.credit(account.id, amount, "bonus")
    assert await ledger.get_balance(account.id) == 25


async def test_credit_rejects_unknown_type(account):
    with pytest.raises(BadRequestError):
        await ledger.credit(account.id, 5, "gift")


async def test_credit_idempotent(account):
    first = await ledger.credit(account.id, 40, "purchase", idempotency_key="order-1")
    second = await ledger.credit(account.id, 40, "purchase", idempotency_key="order-1")
    assert second["duplicate"] is True
    assert second["transaction_id"] == first["transaction_id"]
    assert second["new_balance"] == first["new_balance"] == 65
    assert await ledger.get_balance(account.id) == 65
    assert await CreditTransaction.find(CreditTransaction.idempotency_key == "order-1").count() == 1


async def test_idempotency_key_from_other_account_conflicts(account):
    from app.services import accounts as accounts_service
    other = await accounts_service.create_account("acct2")
    await ledger.credit(account.id, 5, "bonus", idempotency_key="shared")
    with pytest.raises(ConflictError):
        await ledger.credit(other.id, 5, "bonus", idempotency_key="shared")


async def test_batch_debit_scenario(account):
    """25 starter credits, 2 approved at 5 and 3 live at 3: cost 19, balance 6."""
    out = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 2, "live": 3})
    assert out["success"] is True
    assert out["credits_deducted"] == 19
    assert out["new_balance"] == 6
    assert out["pricing"] == {"approved": 5, "live": 3}
    usage = await CreditTransaction.find(
        CreditTransaction.account_id == account.id, CreditTransaction.type == "usage"
    ).to_list()
    assert len(usage) == 1
    assert usage[0].amount == -19
    assert usage[0].approved_count == 2
    assert usage[0].live_count == 3


async def test_batch_debit_uses_gateway_pricing(account):
    await pricing_service.set_gateway_pricing("charge", approved=7, live=None)
    out = await ledger.debit_for_outcome_counts(account.id, "charge", {"approved": 1, "live": 2})
    assert out["credits_deducted"] == 7 + 2 * 3
    assert out["pricing"] == {"approved": 7, "live": 3}


async def test_batch_debit_insufficient(account):
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 4, "live": 1})  # 23 -> balance 2
    out = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 1})
    assert out["success"] is False
    assert out["error"] == "InsufficientCredit"
    assert out["required_credits"] == 5
    assert out["current_balance"] == 2
    assert await ledger.get_balance(account.id) == 2
    assert len(await _transactions(account.id)) == 2


async def test_batch_debit_zero_cost_writes_nothing(account):
    out = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 0, "live": 0, "dead": 12})
    assert out["success"] is True
    assert out["credits_deducted"] == 0
    assert out["transaction_id"] is None
    assert len(await _transactions(account.id)) == 1


async def test_batch_debit_idempotent(account):
    first = await ledger.debit_for_outcome_counts(account.id, "auth", {"live": 2}, idempotency_key="batch-9")
    second = await ledger.debit_for_outcome_counts(account.id, "auth", {"live": 2}, idempotency_key="batch-9")
    assert second["duplicate"] is True
    assert (second["transaction_id"], second["new_balance"]) == (first["transaction_id"], first["new_balance"])
    assert await ledger.get_balance(account.id) == 19


async def test_batch_debit_rejects_negative_counts(account):
    with pytest.raises(BadRequestError):
        await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": -1})


@pytest.mark.parametrize("outcome", ["dead", "error", "captcha", "declined", "DECLINED", "unknown"])
async def test_free_outcomes_never_charge(account, outcome):
    out = await ledger.debit_single_unit(account.id, "auth", outcome)
    assert out["success"] is True
    assert out["credits_deducted"] == 0
    assert len(await _transactions(account.id)) == 1


async def test_single_unit_debit_stops_when_exhausted(account):
    results = [await ledger.debit_single_unit(account.id, "auth", "approved") for _ in range(6)]
    assert [r["success"] for r in results] == [True] * 5 + [False]
    assert results[4]["new_balance"] == 0
    assert results[5]["should_stop"] is True
    assert results[5]["required_credits"] == 5
    assert await ledger.get_balance(account.id) == 0


async def test_unit_debit_retry_after_exhaustion_returns_first_result(account):
    results = [
        await ledger.debit_single_unit(account.id, "auth", "approved", idempotency_key=f"unit-{n}") for n in range(5)
    ]
    assert results[-1]["new_balance"] == 0
    again = await ledger.debit_single_unit(account.id, "auth", "approved", idempotency_key="unit-4")
    assert again["success"] is True
    assert again["duplicate"] is True
    assert again["should_stop"] is False
    assert again["transaction_id"] == results[-1]["transaction_id"]
    assert (again["previous_balance"], again["new_balance"]) == (5, 0)
    assert await ledger.get_balance(account.id) == 0


async def test_batch_retry_after_exhaustion_returns_first_result(account):
    first = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 5}, idempotency_key="batch-all")
    assert first["new_balance"] == 0
    again = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 5}, idempotency_key="batch-all")
    assert again["success"] is True
    assert again["duplicate"] is True
    assert again["transaction_id"] == first["transaction_id"]
    assert len(await _transactions(account.id)) == 2


async def test_key_recorded_after_lookup_wins_over_short_balance(account, monkeypatch):
    # the retry passes the early lookup before the first attempt's row is visible
    real_recorded = ledger._recorded
    calls = {"n": 0}

    async def late_recorded(idempotency_key, account_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_recorded(idempotency_key, account_id)

    await ledger.debit_single_unit(account.id, "auth", "approved", idempotency_key="drain")
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 4}, idempotency_key="rest")
    monkeypatch.setattr(ledger, "_recorded", late_recorded)
    again = await ledger.debit_single_unit(account.id, "auth", "approved", idempotency_key="drain")
    assert again["duplicate"] is True
    assert again["new_balance"] == 20
    assert calls["n"] == 2


async def test_concurrent_same_key_debits_charge_once(account):
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 4})
    results = await asyncio.gather(
        *[ledger.debit_single_unit(account.id, "auth", "approved", idempotency_key="last-card") for _ in range(2)]
    )
    assert all(r["success"] for r in results)
    assert sorted(r["duplicate"] for r in results) == [False, True]
    assert await ledger.get_balance(account.id) == 0


async def test_check_sufficient_credits(account):
    enough = await ledger.check_sufficient_credits(account.id, "auth", 5)
    assert enough["sufficient"] is True
    assert enough["required_credits"] == 25
    assert enough["current_balance"] == 25
    assert enough["pricing"] == {"approved": 5, "live": 3}
    assert enough["tier"] == "free"
    assert enough["warning"] is None
    short = await ledger.check_sufficient_credits(account.id, "auth", 6)
    assert short["sufficient"] is False
    assert short["required_credits"] == 30
    assert "30 credits" in short["warning"]
    # an estimate only; nothing is written
    assert len(await _transactions(account.id)) == 1


async def test_check_sufficient_credits_uses_dearer_price(account):
    await pricing_service.set_gateway_pricing("cheap", 1, 4)
    out = await ledger.check_sufficient_credits(account.id, "cheap", 3)
    assert out["required_credits"] == 12


@pytest.mark.parametrize("card_count", [0, -2, True, 1.5])
async def test_check_sufficient_credits_needs_cards(account, card_count):
    with pytest.raises(BadRequestError) as exc:
        await ledger.check_sufficient_credits(account.id, "auth", card_count)
    assert exc.value.details["reason"] == "NO_CARDS"


async def test_check_sufficient_credits_refuses_inactive_gateway(account):
    await pricing_service.set_gateway_pricing("auth", None, None, is_active=False)
    with pytest.raises(BadRequestError) as exc:
        await ledger.check_sufficient_credits(account.id, "auth", 1)
    assert exc.value.details["reason"] == "GATEWAY_INACTIVE"


async def test_append_retries_on_seq_conflict(account, monkeypatch):
    real_head = ledger._head
    calls = {"n": 0}

    async def stale_head(account_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return 0, 0  # head observed before the starter credit landed
        return await real_head(account_id)

    monkeypatch.setattr(ledger, "_head", stale_head)
    out = await ledger.credit(account.id, 5, "bonus")
    assert out["duplicate"] is False
    assert out["previous_balance"] == 25
    assert out["new_balance"] == 30
    assert calls["n"] == 2
    txs = await _transactions(account.id)
    assert [t.seq for t in txs] == [1, 2]


async def test_retries_exhausted_raise_conflict(account, monkeypatch):
    async def always_stale(account_id):
        return 0, 100

    monkeypatch.setattr(ledger, "_head", always_stale)
    with pytest.raises(ConflictError):
        await ledger.debit_single_unit(account.id, "auth", "live")
    assert await CreditTransaction.find(CreditTransaction.account_id == account.id).count() == 1


async def test_concurrent_debits_keep_chain_consistent(account):
    results = await asyncio.gather(*[ledger.debit_single_unit(account.id, "auth", "live") for _ in range(4)])
    assert all(r["success"] for r in results)
    txs = await _transactions(account.id)
    balance = await ledger.get_balance(account.id)
    assert balance == 25 - 4 * 3
    assert balance == sum(t.amount for t in txs)
    running = 0
    for expected_seq, tx in enumerate(txs, start=1):
        running += tx.amount
        assert tx.seq == expected_seq
        assert tx.balance_after == running


async def test_balance_conservation(account):
    await ledger.credit(account.id, 12, "purchase")
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 1, "live": 1})
    await ledger.debit_single_unit(account.id, "auth", "approved")
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 50})  # rejected
    await ledger.credit(account.id, 3, "bonus")
    txs = await _transactions(account.id)
    assert await ledger.get_balance(account.id) == sum(t.amount for t in txs) == 25 + 12 - 8 - 5 + 3


async def test_can_afford(account):
    ok = await ledger.can_afford(account.id, "auth", "approved")
    assert ok == {"can_continue": True, "balance": 25, "cost": 5, "shortfall": 0, "fail_open": False}
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 4, "live": 1})
    short = await ledger.can_afford(account.id, "auth", "approved")
    assert short["can_continue"] is False
    assert short["shortfall"] == 3
    assert len(await _transactions(account.id)) == 2


async def test_can_afford_fails_open(account, monkeypatch):
    async def down(account_id):
        raise BackendUnavailableError("down")

    monkeypatch.setattr(ledger, "get_balance", down)
    out = await ledger.can_afford(account.id, "auth", "approved")
    assert out["can_continue"] is True
    assert out["fail_open"] is True


async def test_mutation_fails_closed(account, monkeypatch):
    async def down(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(CreditTransaction, "insert", down)
    with pytest.raises(BackendUnavailableError):
        await ledger.credit(account.id, 5, "bonus")


async def test_refund_once(account):
    debit = await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 2})
    refund = await ledger.refund_transaction(account.id, debit["transaction_id"], reason="gateway outage")
    again = await ledger.refund_transaction(account.id, debit["transaction_id"])
    assert refund["new_balance"] == 25
    assert again["duplicate"] is True
    assert await ledger.get_balance(account.id) == 25


async def test_refund_rejects_credit_transactions(account):
    starter = (await _transactions(account.id))[0]
    with pytest.raises(BadRequestError):
        await ledger.refund_transaction(account.id, str(starter.id))
    with pytest.raises(NotFoundError):
        await ledger.refund_transaction(account.id, "not-an-id")


async def test_transaction_history_filters_and_pages(account):
    await ledger.credit(account.id, 10, "purchase")
    await ledger.debit_single_unit(account.id, "auth", "live")
    await ledger.debit_single_unit(account.id, "auth", "live")
    page = await ledger.get_transaction_history(account.id, limit=2)
    assert page["total"] == 4
    assert page["has_more"] is True
    assert [t["seq"] for t in page["transactions"]] == [4, 3]
    usage = await ledger.get_transaction_history(account.id, tx_type="usage")
    assert usage["total"] == 2
    with pytest.raises(BadRequestError):
        await ledger.get_transaction_history(account.id, tx_type="gift")


async def test_credit_summary(account):
    await ledger.debit_for_outcome_counts(account.id, "auth", {"approved": 1})
    summary = await ledger.get_credit_summary(account.id)
    assert summary["balance"] == 20
    assert summary["tier"] == "free"
    assert summary["daily_claim_amount"] == 10
    assert summary["monthly_spent"] == 5
    assert summary["monthly_earned"] == 25
    assert len(summary["recent_transactions"]) == 2
