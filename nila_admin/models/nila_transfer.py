from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document
from pydantic import Field

from nila_admin.models.settlement import MongoDecimal


class NilaTransfer(Document):
    """Recorded NILA reward payout; one per processed settlement."""
    user_id: str
    settlement_id: str
    nila_amount: MongoDecimal
    network: str
    wallet_address: str
    transaction_hash: str | None = None
    status: Literal["completed", "pending", "failed"] = "completed"
    transfer_type: str = "settlement_reward"
    notes: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "nila_transfers"
        indexes = [
            pymongo.IndexModel([("settlement_id", pymongo.ASCENDING)], unique=True),
            [("user_id", 1), ("created_at", -1)],
        ]
