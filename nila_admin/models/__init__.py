from nila_admin.models.user import User
from nila_admin.models.credit_balance import CreditBalance
from nila_admin.models.credit_ledger import CreditLedgerEntry
from nila_admin.models.settlement import Settlement
from nila_admin.models.nila_transfer import NilaTransfer
from nila_admin.models.audit_log import AuditLog
from nila_admin.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditBalance",
    "CreditLedgerEntry",
    "Settlement",
    "NilaTransfer",
    "AuditLog",
    "FailedJob",
]
