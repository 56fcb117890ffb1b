from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
STALE = "stale"

TERMINAL_STATUSES = (COMPLETED, FAILED, STALE)


class ActiveOperation(Document):
    """One in-flight batch per account; at most one running row per account_id."""
    account_id: str
    operation_type: str
    gateway_id: str | None = None
    status: str = RUNNING
    card_count: int | None = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "active_operations"
        indexes = [
            IndexModel(
                [("account_id", ASCENDING)],
                name="one_running_per_account",
                unique=True,
                partialFilterExpression={"status": RUNNING},
            ),
            IndexModel([("status", ASCENDING), ("started_at", ASCENDING)], name="status_started_at"),
            IndexModel([("status", ASCENDING), ("completed_at", ASCENDING)], name="status_completed_at"),
        ]
