from datetime import datetime

import pymongo
from beanie import Document
from pydantic import Field


class CreditBalance(Document):
    """Current balance per user; every write bumps version (compare-and-swap token)."""
    user_id: str
    credit_balance: int = Field(default=0, ge=0)
    version: int = 0
    applied_references: list[str] = Field(default_factory=list)  # bounded window of debited settlement ids
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "balances"
        indexes = [
            pymongo.IndexModel([("user_id", pymongo.ASCENDING)], unique=True),
            [("applied_references", 1)],
        ]
