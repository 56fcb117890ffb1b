from datetime import datetime

from beanie import Document
from pydantic import Field


class GatewayConfig(Document):
    """Credit pricing per gateway key. Missing prices fall back to configured defaults."""
    id: str  # gateway id
    pricing_approved: int | None = None
    pricing_live: int | None = None
    is_active: bool = True
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "gateway_configs"
