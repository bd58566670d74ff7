"""Records exchanged between the settlement engine and its stores."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

SETTLEMENT_DEBIT = "settlement_debit"
SETTLEMENT_REWARD = "settlement_reward"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def settlement_description(settlement_id: str) -> str:
    return f"Digital Asset Reward Settlement - {settlement_id}"


class Network(str, Enum):
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    BSC = "bsc"
    AVALANCHE = "avalanche"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class SettlementStep(str, Enum):
    """Last milestone persisted on the settlement (saga cursor)."""

    RESERVED = "reserved"
    DEBITED = "debited"
    RECORDED = "recorded"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"


class TransferStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class BalanceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    credit_balance: int = Field(ge=0)
    version: int = Field(default=0, ge=0)
    updated_at: datetime | None = None


class SettlementRequest(BaseModel):
    """Operator request to convert credits into a recorded NILA reward."""

    user_id: str = Field(min_length=1)
    credits_used: int = Field(gt=0)
    reward_amount: Decimal = Field(ge=0, decimal_places=6)
    network: Network
    wallet_address: str = Field(min_length=1)
    transaction_hash: str | None = None
    notes: str | None = None
    settlement_id: str | None = Field(default=None, description="Idempotency key; generated when omitted")
    performed_by: str | None = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "665f1c2b9a1e4b0012345678",
            "credits_used": 200,
            "reward_amount": "10.5",
            "network": "polygon",
            "wallet_address": "0xabc",
        }
    })

    @field_validator("user_id", "wallet_address", mode="before")
    @classmethod
    def _strip_required(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("transaction_hash", "notes", "settlement_id", "performed_by", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class SettlementRecord(BaseModel):
    settlement_id: str
    user_id: str
    credits_used: int
    reward_amount: Decimal
    network: Network
    wallet_address: str
    transaction_hash: str | None = None
    status: SettlementStatus = SettlementStatus.PENDING
    notes: str | None = None
    step: SettlementStep = SettlementStep.RESERVED
    attempts: int = 1
    balance_before: int | None = None
    balance_after: int | None = None
    expected_version: int | None = None
    failed_step: str | None = None
    last_error: str | None = None
    # set when a debit call failed and the balance could not tell us whether it landed
    debit_unknown: bool = False
    performed_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def matches(self, request: SettlementRequest) -> bool:
        """True when a replayed request carries the same financial terms."""
        return (
            self.user_id == request.user_id
            and self.credits_used == request.credits_used
            and self.reward_amount == request.reward_amount
            and self.network == request.network
            and self.wallet_address == request.wallet_address
        )

    @property
    def debit_applied(self) -> bool:
        return self.step != SettlementStep.RESERVED


class LedgerEntryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    amount: int
    transaction_type: str = SETTLEMENT_DEBIT
    reference_id: str
    balance_before: int
    balance_after: int = Field(ge=0)
    sequence: int
    description: str
    created_at: datetime = Field(default_factory=utcnow)


class TransferRecord(BaseModel):
    user_id: str
    settlement_id: str
    nila_amount: Decimal
    network: Network
    wallet_address: str
    transaction_hash: str | None = None
    status: TransferStatus = TransferStatus.COMPLETED
    transfer_type: str = SETTLEMENT_REWARD
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    actor: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class SettlementSummary(BaseModel):
    total_settlements: int = 0
    total_credits_used: int = 0
    total_rewards: Decimal = Decimal("0")
    processed_today: int = 0


class UserSummary(BaseModel):
    """A user as the operator picks them: profile plus current credit balance."""

    user_id: str
    full_name: str = ""
    email: str = ""
    credit_balance: int = 0


class SettlementView(SettlementRecord):
    user: UserSummary | None = None
