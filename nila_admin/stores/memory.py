"""In-process stores. Every call yields to the loop once so concurrent sagas interleave like they would over the network."""

import asyncio
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Any

from nila_admin.stores.base import (
    AuditStore,
    BalanceStore,
    DuplicateRecordError,
    LedgerStore,
    SettlementStore,
    SettlementStores,
    TransferStore,
    UserStore,
)
from nila_admin.stores.records import (
    AuditEvent,
    BalanceSnapshot,
    LedgerEntryRecord,
    SettlementRecord,
    SettlementStatus,
    SettlementStep,
    SettlementSummary,
    TransferRecord,
    UserSummary,
    utcnow,
)


class MemoryBalanceStore(BalanceStore):
    def __init__(self, applied_window: int = 200) -> None:
        self.applied_window = applied_window
        self._accounts: dict[str, dict[str, Any]] = {}

    def open_account(self, user_id: str, credit_balance: int = 0) -> BalanceSnapshot:
        if credit_balance < 0:
            raise ValueError("credit_balance must be non-negative")
        self._accounts[user_id] = {
            "credit_balance": credit_balance,
            "version": 0,
            "applied": deque(maxlen=self.applied_window),
            "updated_at": utcnow(),
        }
        return self._snapshot(user_id)

    def credit(self, user_id: str, amount: int) -> BalanceSnapshot:
        """Top-up from outside the settlement flow (purchases); bumps the version."""
        acct = self._accounts[user_id]
        acct["credit_balance"] += amount
        acct["version"] += 1
        acct["updated_at"] = utcnow()
        return self._snapshot(user_id)

    def peek(self, user_id: str) -> int:
        acct = self._accounts.get(user_id)
        return acct["credit_balance"] if acct else 0

    def _snapshot(self, user_id: str) -> BalanceSnapshot:
        acct = self._accounts[user_id]
        return BalanceSnapshot(
            user_id=user_id,
            credit_balance=acct["credit_balance"],
            version=acct["version"],
            updated_at=acct["updated_at"],
        )

    async def get(self, user_id: str) -> BalanceSnapshot | None:
        await asyncio.sleep(0)
        if user_id not in self._accounts:
            return None
        return self._snapshot(user_id)

    async def debit_if_version(
        self,
        user_id: str,
        expected_version: int,
        amount: int,
        reference_id: str,
    ) -> BalanceSnapshot | None:
        await asyncio.sleep(0)
        acct = self._accounts.get(user_id)
        if acct is None or acct["version"] != expected_version or acct["credit_balance"] < amount:
            return None
        acct["credit_balance"] -= amount
        acct["version"] += 1
        acct["applied"].append(reference_id)
        acct["updated_at"] = utcnow()
        return self._snapshot(user_id)

    async def has_applied(self, user_id: str, reference_id: str) -> bool:
        await asyncio.sleep(0)
        acct = self._accounts.get(user_id)
        return acct is not None and reference_id in acct["applied"]


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._entries: list[LedgerEntryRecord] = []

    async def append(self, entry: LedgerEntryRecord) -> LedgerEntryRecord:
        await asyncio.sleep(0)
        for e in self._entries:
            if e.reference_id == entry.reference_id and e.transaction_type == entry.transaction_type:
                raise DuplicateRecordError("credit_ledger", entry.reference_id)
        self._entries.append(entry)
        return entry

    async def get_by_reference(self, reference_id: str, transaction_type: str) -> LedgerEntryRecord | None:
        await asyncio.sleep(0)
        for e in self._entries:
            if e.reference_id == reference_id and e.transaction_type == transaction_type:
                return e
        return None

    async def list_by_reference(self, reference_id: str) -> list[LedgerEntryRecord]:
        await asyncio.sleep(0)
        return [e for e in self._entries if e.reference_id == reference_id]

    async def list_for_user(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[LedgerEntryRecord]:
        await asyncio.sleep(0)
        entries = sorted(
            (e for e in self._entries if e.user_id == user_id),
            key=lambda e: (e.sequence, e.created_at),
            reverse=newest_first,
        )
        end = None if limit is None else offset + limit
        return entries[offset:end]

    async def count_for_user(self, user_id: str) -> int:
        await asyncio.sleep(0)
        return sum(1 for e in self._entries if e.user_id == user_id)


class MemorySettlementStore(SettlementStore):
    def __init__(self) -> None:
        self._records: dict[str, SettlementRecord] = {}

    async def create(self, record: SettlementRecord) -> SettlementRecord:
        await asyncio.sleep(0)
        if record.settlement_id in self._records:
            raise DuplicateRecordError("settlements", record.settlement_id)
        self._records[record.settlement_id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get(self, settlement_id: str) -> SettlementRecord | None:
        await asyncio.sleep(0)
        record = self._records.get(settlement_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, settlement_id: str, changes: dict[str, Any]) -> SettlementRecord:
        await asyncio.sleep(0)
        current = self._records[settlement_id]
        updated = current.model_copy(update={**changes, "updated_at": utcnow()})
        self._records[settlement_id] = updated
        return updated.model_copy(deep=True)

    async def claim(self, settlement_id: str, expected_attempts: int) -> SettlementRecord | None:
        await asyncio.sleep(0)
        current = self._records.get(settlement_id)
        if (
            current is None
            or current.attempts != expected_attempts
            or current.status == SettlementStatus.PROCESSED
        ):
            return None
        updated = current.model_copy(update={
            "status": SettlementStatus.PENDING,
            "attempts": current.attempts + 1,
            "updated_at": utcnow(),
        })
        self._records[settlement_id] = updated
        return updated.model_copy(deep=True)

    def _filtered(self, status: SettlementStatus | None) -> list[SettlementRecord]:
        return [r for r in self._records.values() if status is None or r.status == status]

    async def list_recent(
        self,
        limit: int,
        offset: int,
        status: SettlementStatus | None = None,
    ) -> list[SettlementRecord]:
        await asyncio.sleep(0)
        records = sorted(self._filtered(status), key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]

    async def count(self, status: SettlementStatus | None = None) -> int:
        await asyncio.sleep(0)
        return len(self._filtered(status))

    async def find_resumable(self, stale_before: datetime, limit: int) -> list[SettlementRecord]:
        await asyncio.sleep(0)
        out = [
            r for r in self._records.values()
            if (r.status == SettlementStatus.FAILED and (r.step != SettlementStep.RESERVED or r.debit_unknown))
            or (r.status == SettlementStatus.PENDING and r.updated_at < stale_before)
        ]
        out.sort(key=lambda r: r.updated_at)
        return [r.model_copy(deep=True) for r in out[:limit]]

    async def summary(self, day_start: datetime) -> SettlementSummary:
        await asyncio.sleep(0)
        records = list(self._records.values())
        return SettlementSummary(
            total_settlements=len(records),
            total_credits_used=sum(r.credits_used for r in records),
            total_rewards=sum(
                (r.reward_amount for r in records if r.status == SettlementStatus.PROCESSED),
                Decimal("0"),
            ),
            processed_today=sum(
                1 for r in records
                if r.status == SettlementStatus.PROCESSED and r.created_at >= day_start
            ),
        )


class MemoryTransferStore(TransferStore):
    def __init__(self) -> None:
        self._records: list[TransferRecord] = []

    async def create(self, record: TransferRecord) -> TransferRecord:
        await asyncio.sleep(0)
        if any(t.settlement_id == record.settlement_id for t in self._records):
            raise DuplicateRecordError("nila_transfers", record.settlement_id)
        self._records.append(record.model_copy(deep=True))
        return record

    async def get_by_settlement(self, settlement_id: str) -> TransferRecord | None:
        await asyncio.sleep(0)
        for t in self._records:
            if t.settlement_id == settlement_id:
                return t.model_copy(deep=True)
        return None

    async def list_by_settlement(self, settlement_id: str) -> list[TransferRecord]:
        await asyncio.sleep(0)
        return [t.model_copy(deep=True) for t in self._records if t.settlement_id == settlement_id]


class MemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> None:
        await asyncio.sleep(0)
        self.events.append(event)


class MemoryUserStore(UserStore):
    def __init__(self, balances: MemoryBalanceStore) -> None:
        self.balances = balances
        self._profiles: dict[str, dict[str, str]] = {}

    def add(self, user_id: str, full_name: str = "", email: str = "") -> None:
        self._profiles[user_id] = {"full_name": full_name, "email": email}

    def _summary(self, user_id: str) -> UserSummary:
        return UserSummary(
            user_id=user_id,
            credit_balance=self.balances.peek(user_id),
            **self._profiles[user_id],
        )

    async def list_with_balances(self, limit: int, offset: int) -> list[UserSummary]:
        await asyncio.sleep(0)
        ordered = sorted(self._profiles, key=lambda uid: (self._profiles[uid]["full_name"], uid))
        return [self._summary(uid) for uid in ordered[offset:offset + limit]]

    async def count(self) -> int:
        await asyncio.sleep(0)
        return len(self._profiles)

    async def get_many(self, user_ids: list[str]) -> dict[str, UserSummary]:
        await asyncio.sleep(0)
        return {uid: self._summary(uid) for uid in user_ids if uid in self._profiles}


def memory_stores(applied_window: int = 200) -> SettlementStores:
    balances = MemoryBalanceStore(applied_window=applied_window)
    return SettlementStores(
        balances=balances,
        ledger=MemoryLedgerStore(),
        settlements=MemorySettlementStore(),
        transfers=MemoryTransferStore(),
        audit=MemoryAuditStore(),
        users=MemoryUserStore(balances),
    )
