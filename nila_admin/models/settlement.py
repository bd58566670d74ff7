from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

import pymongo
from beanie import Document
from bson import Decimal128
from pydantic import BeforeValidator, Field


def _from_decimal128(v):
    return v.to_decimal() if isinstance(v, Decimal128) else v


MongoDecimal = Annotated[Decimal, BeforeValidator(_from_decimal128)]


class Settlement(Document):
    settlement_id: str
    user_id: str
    credits_used: int
    reward_amount: MongoDecimal
    network: Literal["ethereum", "polygon", "arbitrum", "bsc", "avalanche"]
    wallet_address: str
    transaction_hash: str | None = None
    status: Literal["pending", "processed", "failed"] = "pending"
    notes: str | None = None
    # Saga cursor and debit intent
    step: Literal["reserved", "debited", "recorded", "transferred", "completed"] = "reserved"
    attempts: int = 1
    balance_before: int | None = None
    balance_after: int | None = None
    expected_version: int | None = None
    failed_step: str | None = None
    last_error: str | None = None
    debit_unknown: bool = False
    performed_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "settlements"
        indexes = [
            pymongo.IndexModel([("settlement_id", pymongo.ASCENDING)], unique=True),
            [("created_at", -1)],
            [("status", 1), ("updated_at", 1)],
            [("user_id", 1), ("created_at", -1)],
        ]
