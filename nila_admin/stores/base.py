from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from nila_admin.core.config import get_settings
from nila_admin.stores.records import (
    AuditEvent,
    BalanceSnapshot,
    LedgerEntryRecord,
    SettlementRecord,
    SettlementStatus,
    SettlementSummary,
    TransferRecord,
    UserSummary,
)


class DuplicateRecordError(Exception):
    """A unique key (settlement_id, ledger reference, transfer settlement) already exists."""

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Duplicate {collection} record: {key}")


class BalanceStore(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> BalanceSnapshot | None:
        """Return the current balance, or None when the user does not exist."""
        ...

    @abstractmethod
    async def debit_if_version(
        self,
        user_id: str,
        expected_version: int,
        amount: int,
        reference_id: str,
    ) -> BalanceSnapshot | None:
        """
        Compare-and-swap debit: applies only if the stored version equals expected_version
        and the balance covers amount. Records reference_id as applied.
        Returns the new snapshot, or None when the condition did not hold.
        """
        ...

    @abstractmethod
    async def has_applied(self, user_id: str, reference_id: str) -> bool:
        """True if a debit tagged with reference_id is in the applied window."""
        ...


class LedgerStore(ABC):
    @abstractmethod
    async def append(self, entry: LedgerEntryRecord) -> LedgerEntryRecord:
        """Insert an immutable entry; raise DuplicateRecordError on (reference_id, transaction_type)."""
        ...

    @abstractmethod
    async def get_by_reference(self, reference_id: str, transaction_type: str) -> LedgerEntryRecord | None:
        ...

    @abstractmethod
    async def list_by_reference(self, reference_id: str) -> list[LedgerEntryRecord]:
        ...

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[LedgerEntryRecord]:
        ...

    @abstractmethod
    async def count_for_user(self, user_id: str) -> int:
        ...


class SettlementStore(ABC):
    @abstractmethod
    async def create(self, record: SettlementRecord) -> SettlementRecord:
        """Insert; raise DuplicateRecordError if settlement_id exists."""
        ...

    @abstractmethod
    async def get(self, settlement_id: str) -> SettlementRecord | None:
        ...

    @abstractmethod
    async def update(self, settlement_id: str, changes: dict[str, Any]) -> SettlementRecord:
        """Apply changes (updated_at is refreshed) and return the stored record."""
        ...

    @abstractmethod
    async def claim(self, settlement_id: str, expected_attempts: int) -> SettlementRecord | None:
        """
        Take ownership for a resume: only if attempts == expected_attempts and status is not
        processed. Sets status pending and bumps attempts. None when someone else won.
        """
        ...

    @abstractmethod
    async def list_recent(
        self,
        limit: int,
        offset: int,
        status: SettlementStatus | None = None,
    ) -> list[SettlementRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def count(self, status: SettlementStatus | None = None) -> int:
        ...

    @abstractmethod
    async def find_resumable(self, stale_before: datetime, limit: int) -> list[SettlementRecord]:
        """
        Failed settlements past the reserved step or with an unknown debit outcome,
        plus pending ones not touched since stale_before.
        """
        ...

    @abstractmethod
    async def summary(self, day_start: datetime) -> SettlementSummary:
        ...


class TransferStore(ABC):
    @abstractmethod
    async def create(self, record: TransferRecord) -> TransferRecord:
        """Insert; raise DuplicateRecordError if a transfer for settlement_id exists."""
        ...

    @abstractmethod
    async def get_by_settlement(self, settlement_id: str) -> TransferRecord | None:
        ...

    @abstractmethod
    async def list_by_settlement(self, settlement_id: str) -> list[TransferRecord]:
        ...


class AuditStore(ABC):
    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        ...


class UserStore(ABC):
    @abstractmethod
    async def list_with_balances(self, limit: int, offset: int) -> list[UserSummary]:
        """Users ordered by full_name, each with its current credit balance (0 when none)."""
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def get_many(self, user_ids: list[str]) -> dict[str, UserSummary]:
        """Known users among user_ids, keyed by id; unknown ids are left out."""
        ...


@dataclass
class SettlementStores:
    balances: BalanceStore
    ledger: LedgerStore
    settlements: SettlementStore
    transfers: TransferStore
    audit: AuditStore
    users: UserStore


def get_stores() -> SettlementStores:
    settings = get_settings()
    if settings.store_backend == "memory":
        from nila_admin.stores.memory import memory_stores
        return memory_stores(applied_window=settings.applied_reference_window)
    from nila_admin.stores.mongo import mongo_stores
    return mongo_stores(applied_window=settings.applied_reference_window)
