from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

PURCHASE = "purchase"
USAGE = "usage"
CLAIM = "claim"
BONUS = "bonus"
REFERRAL = "referral"
STARTER = "starter"
REFUND = "refund"

TRANSACTION_TYPES = (PURCHASE, USAGE, CLAIM, BONUS, REFERRAL, STARTER, REFUND)


class CreditTransaction(Document):
    """Append-only ledger row. balance_after of seq N = balance_after of seq N-1 + amount."""
    account_id: str
    seq: int
    amount: int  # positive = credit, negative = debit
    balance_after: int
    type: str
    gateway_id: str | None = None
    pricing: dict[str, int] | None = None  # snapshot used to price a debit
    approved_count: int | None = None
    live_count: int | None = None
    description: str | None = None
    reference: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        keep_nulls = False  # absent idempotency_key stays out of the sparse unique index
        indexes = [
            IndexModel([("account_id", ASCENDING), ("seq", ASCENDING)], name="account_seq_unique", unique=True),
            IndexModel([("idempotency_key", ASCENDING)], name="idempotency_key_unique", unique=True, sparse=True),
            IndexModel([("account_id", ASCENDING), ("created_at", DESCENDING)], name="account_created_at"),
        ]
