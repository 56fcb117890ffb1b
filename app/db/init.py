import certifi
from beanie import init_beanie
from pymongo import AsyncMongoClient

from app.core.config import get_settings
from app.models.account import Account
from app.models.active_operation import ActiveOperation
from app.models.audit_log import AuditLog
from app.models.credit_transaction import CreditTransaction
from app.models.failed_job import FailedJob
from app.models.gateway_config import GatewayConfig

DOCUMENT_MODELS = [
    Account,
    CreditTransaction,
    ActiveOperation,
    GatewayConfig,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Register document models and build indexes. Pass a database to skip client construction."""
    if database is None:
        settings = get_settings()
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncMongoClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
