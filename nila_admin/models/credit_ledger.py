from datetime import datetime

import pymongo
from beanie import Document
from pydantic import Field


class CreditLedgerEntry(Document):
    user_id: str
    amount: int  # positive = credit, negative = debit
    transaction_type: str  # settlement_debit
    reference_id: str  # settlement_id
    balance_before: int
    balance_after: int
    sequence: int  # balance version after this entry was applied
    description: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            [("user_id", 1), ("sequence", -1)],
            pymongo.IndexModel(
                [("reference_id", pymongo.ASCENDING), ("transaction_type", pymongo.ASCENDING)],
                unique=True,
            ),
        ]
