import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from nila_admin.core.config import get_settings
from nila_admin.models import AuditLog, CreditBalance, CreditLedgerEntry, FailedJob, NilaTransfer, Settlement, User

DOCUMENT_MODELS = [
    User,
    CreditBalance,
    CreditLedgerEntry,
    Settlement,
    NilaTransfer,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true)."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {"serverSelectionTimeoutMS": int(settings.store_timeout_seconds * 1000)}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
