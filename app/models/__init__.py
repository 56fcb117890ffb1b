from app.models.account import Account
from app.models.active_operation import ActiveOperation
from app.models.audit_log import AuditLog
from app.models.credit_transaction import CreditTransaction
from app.models.failed_job import FailedJob
from app.models.gateway_config import GatewayConfig

__all__ = [
    "Account",
    "ActiveOperation",
    "AuditLog",
    "CreditTransaction",
    "FailedJob",
    "GatewayConfig",
]
