from datetime import datetime
from uuid import uuid4

from beanie import Document
from pydantic import Field

FREE = "free"
BRONZE = "bronze"
SILVER = "silver"
GOLD = "gold"
DIAMOND = "diamond"

# multiplier is reported to clients only; pricing is a fixed cost per outcome class
TIERS: dict[str, dict[str, float | int]] = {
    FREE: {"multiplier": 1.0, "daily_claim": 10},
    BRONZE: {"multiplier": 0.95, "daily_claim": 15},
    SILVER: {"multiplier": 0.85, "daily_claim": 20},
    GOLD: {"multiplier": 0.70, "daily_claim": 30},
    DIAMOND: {"multiplier": 0.50, "daily_claim": 30},
}


def tier_config(tier: str | None) -> dict[str, float | int]:
    return TIERS.get(tier or FREE, TIERS[FREE])


class Account(Document):
    """Credit-holding account. credit_balance is written only by the ledger."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    credit_balance: int = 0
    ledger_seq: int = 0  # seq of the last transaction reflected in credit_balance
    tier: str = FREE
    role: str = "user"  # "user" | "admin"
    last_daily_claim: datetime | None = None
    is_flagged: bool = False
    referral_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
        indexes = [[("tier", 1)], [("is_flagged", 1)]]
