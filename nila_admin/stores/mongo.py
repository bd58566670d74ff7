"""MongoDB stores on Beanie documents. Conditional updates go through the Motor collection."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from beanie.operators import In
from bson import Decimal128, ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from nila_admin.models.audit_log import AuditLog
from nila_admin.models.credit_balance import CreditBalance
from nila_admin.models.credit_ledger import CreditLedgerEntry
from nila_admin.models.nila_transfer import NilaTransfer
from nila_admin.models.settlement import Settlement
from nila_admin.models.user import User
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
)


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _naive(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, datetime):
        return _naive(value)
    return value


def _decode(raw: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for k, v in raw.items():
        if k in ("_id", "revision_id"):
            continue
        if isinstance(v, Decimal128):
            v = v.to_decimal()
        elif isinstance(v, datetime):
            v = _aware(v)
        out[k] = v
    return out


class MongoBalanceStore(BalanceStore):
    def __init__(self, applied_window: int = 200) -> None:
        self.applied_window = applied_window

    async def get(self, user_id: str) -> BalanceSnapshot | None:
        if not ObjectId.is_valid(user_id):
            return None
        user = await User.get(ObjectId(user_id))
        if not user:
            return None
        bal = await CreditBalance.find_one(CreditBalance.user_id == user_id)
        if not bal:
            return BalanceSnapshot(user_id=user_id, credit_balance=0, version=0)
        return BalanceSnapshot(
            user_id=user_id,
            credit_balance=bal.credit_balance,
            version=bal.version,
            updated_at=_aware(bal.updated_at),
        )

    async def debit_if_version(
        self,
        user_id: str,
        expected_version: int,
        amount: int,
        reference_id: str,
    ) -> BalanceSnapshot | None:
        raw = await CreditBalance.get_motor_collection().find_one_and_update(
            {
                "user_id": user_id,
                "version": expected_version,
                "credit_balance": {"$gte": amount},
            },
            {
                "$inc": {"credit_balance": -amount, "version": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$push": {"applied_references": {"$each": [reference_id], "$slice": -self.applied_window}},
            },
            return_document=ReturnDocument.AFTER,
        )
        if raw is None:
            return None
        return BalanceSnapshot(
            user_id=user_id,
            credit_balance=raw["credit_balance"],
            version=raw["version"],
            updated_at=_aware(raw.get("updated_at")),
        )

    async def has_applied(self, user_id: str, reference_id: str) -> bool:
        found = await CreditBalance.find_one(
            CreditBalance.user_id == user_id,
            {"applied_references": reference_id},
        )
        return found is not None


class MongoLedgerStore(LedgerStore):
    @staticmethod
    def _record(doc: CreditLedgerEntry) -> LedgerEntryRecord:
        return LedgerEntryRecord(**_decode(doc.model_dump(exclude={"id", "revision_id"})))

    async def append(self, entry: LedgerEntryRecord) -> LedgerEntryRecord:
        doc = CreditLedgerEntry(**{**entry.model_dump(), "created_at": _naive(entry.created_at)})
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise DuplicateRecordError("credit_ledger", entry.reference_id) from e
        return entry

    async def get_by_reference(self, reference_id: str, transaction_type: str) -> LedgerEntryRecord | None:
        doc = await CreditLedgerEntry.find_one(
            CreditLedgerEntry.reference_id == reference_id,
            CreditLedgerEntry.transaction_type == transaction_type,
        )
        return self._record(doc) if doc else None

    async def list_by_reference(self, reference_id: str) -> list[LedgerEntryRecord]:
        docs = await CreditLedgerEntry.find(CreditLedgerEntry.reference_id == reference_id).to_list()
        return [self._record(d) for d in docs]

    async def list_for_user(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[LedgerEntryRecord]:
        order = -CreditLedgerEntry.sequence if newest_first else +CreditLedgerEntry.sequence
        query = CreditLedgerEntry.find(CreditLedgerEntry.user_id == user_id).sort(order).skip(offset)
        if limit is not None:
            query = query.limit(limit)
        return [self._record(d) for d in await query.to_list()]

    async def count_for_user(self, user_id: str) -> int:
        return await CreditLedgerEntry.find(CreditLedgerEntry.user_id == user_id).count()


class MongoSettlementStore(SettlementStore):
    @staticmethod
    def _record(raw: dict[str, Any]) -> SettlementRecord:
        return SettlementRecord(**_decode(raw))

    @staticmethod
    def _doc_record(doc: Settlement) -> SettlementRecord:
        return SettlementRecord(**_decode(doc.model_dump(exclude={"id", "revision_id"})))

    async def create(self, record: SettlementRecord) -> SettlementRecord:
        data = record.model_dump(mode="python")
        doc = Settlement(**{
            **data,
            "network": record.network.value,
            "status": record.status.value,
            "step": record.step.value,
            "created_at": _naive(record.created_at),
            "updated_at": _naive(record.updated_at),
        })
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise DuplicateRecordError("settlements", record.settlement_id) from e
        return record

    async def get(self, settlement_id: str) -> SettlementRecord | None:
        doc = await Settlement.find_one(Settlement.settlement_id == settlement_id)
        return self._doc_record(doc) if doc else None

    async def update(self, settlement_id: str, changes: dict[str, Any]) -> SettlementRecord:
        fields = {k: _encode(v) for k, v in changes.items()}
        fields["updated_at"] = datetime.utcnow()
        raw = await Settlement.get_motor_collection().find_one_and_update(
            {"settlement_id": settlement_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if raw is None:
            raise KeyError(settlement_id)
        return self._record(raw)

    async def claim(self, settlement_id: str, expected_attempts: int) -> SettlementRecord | None:
        raw = await Settlement.get_motor_collection().find_one_and_update(
            {
                "settlement_id": settlement_id,
                "attempts": expected_attempts,
                "status": {"$ne": SettlementStatus.PROCESSED.value},
            },
            {
                "$set": {"status": SettlementStatus.PENDING.value, "updated_at": datetime.utcnow()},
                "$inc": {"attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._record(raw) if raw else None

    @staticmethod
    def _status_filter(status: SettlementStatus | None) -> dict[str, Any]:
        return {} if status is None else {"status": status.value}

    async def list_recent(
        self,
        limit: int,
        offset: int,
        status: SettlementStatus | None = None,
    ) -> list[SettlementRecord]:
        docs = (
            await Settlement.find(self._status_filter(status))
            .sort(-Settlement.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [self._doc_record(d) for d in docs]

    async def count(self, status: SettlementStatus | None = None) -> int:
        return await Settlement.find(self._status_filter(status)).count()

    async def find_resumable(self, stale_before: datetime, limit: int) -> list[SettlementRecord]:
        docs = (
            await Settlement.find({
                "$or": [
                    {"status": SettlementStatus.FAILED.value, "step": {"$ne": SettlementStep.RESERVED.value}},
                    {"status": SettlementStatus.FAILED.value, "debit_unknown": True},
                    {"status": SettlementStatus.PENDING.value, "updated_at": {"$lt": _naive(stale_before)}},
                ]
            })
            .sort(+Settlement.updated_at)
            .limit(limit)
            .to_list()
        )
        return [self._doc_record(d) for d in docs]

    async def summary(self, day_start: datetime) -> SettlementSummary:
        pipeline = [
            {
                "$group": {
                    "_id": None,
                    "total_settlements": {"$sum": 1},
                    "total_credits_used": {"$sum": "$credits_used"},
                    "total_rewards": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$status", SettlementStatus.PROCESSED.value]},
                                "$reward_amount",
                                Decimal128("0"),
                            ]
                        }
                    },
                    "processed_today": {
                        "$sum": {
                            "$cond": [
                                {
                                    "$and": [
                                        {"$eq": ["$status", SettlementStatus.PROCESSED.value]},
                                        {"$gte": ["$created_at", _naive(day_start)]},
                                    ]
                                },
                                1,
                                0,
                            ]
                        }
                    },
                }
            }
        ]
        rows = await Settlement.aggregate(pipeline).to_list()
        if not rows:
            return SettlementSummary()
        return SettlementSummary(**_decode(rows[0]))


class MongoTransferStore(TransferStore):
    @staticmethod
    def _record(doc: NilaTransfer) -> TransferRecord:
        return TransferRecord(**_decode(doc.model_dump(exclude={"id", "revision_id"})))

    async def create(self, record: TransferRecord) -> TransferRecord:
        doc = NilaTransfer(**{
            **record.model_dump(mode="python"),
            "network": record.network.value,
            "status": record.status.value,
            "created_at": _naive(record.created_at),
        })
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise DuplicateRecordError("nila_transfers", record.settlement_id) from e
        return record

    async def get_by_settlement(self, settlement_id: str) -> TransferRecord | None:
        doc = await NilaTransfer.find_one(NilaTransfer.settlement_id == settlement_id)
        return self._record(doc) if doc else None

    async def list_by_settlement(self, settlement_id: str) -> list[TransferRecord]:
        docs = await NilaTransfer.find(NilaTransfer.settlement_id == settlement_id).to_list()
        return [self._record(d) for d in docs]


class MongoAuditStore(AuditStore):
    async def append(self, event: AuditEvent) -> None:
        await AuditLog(
            actor=event.actor,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            metadata=event.metadata,
            created_at=_naive(event.created_at),
        ).insert()


class MongoUserStore(UserStore):
    @staticmethod
    async def _summaries(users: list[User]) -> list[UserSummary]:
        ids = [str(u.id) for u in users]
        balances = await CreditBalance.find(In(CreditBalance.user_id, ids)).to_list()
        by_user = {b.user_id: b.credit_balance for b in balances}
        return [
            UserSummary(
                user_id=str(u.id),
                full_name=u.full_name,
                email=u.email,
                credit_balance=by_user.get(str(u.id), 0),
            )
            for u in users
        ]

    async def list_with_balances(self, limit: int, offset: int) -> list[UserSummary]:
        users = await User.find_all().sort(+User.full_name).skip(offset).limit(limit).to_list()
        return await self._summaries(users)

    async def count(self) -> int:
        return await User.find_all().count()

    async def get_many(self, user_ids: list[str]) -> dict[str, UserSummary]:
        oids = [ObjectId(u) for u in user_ids if ObjectId.is_valid(u)]
        if not oids:
            return {}
        users = await User.find(In(User.id, oids)).to_list()
        return {s.user_id: s for s in await self._summaries(users)}


def mongo_stores(applied_window: int = 200) -> SettlementStores:
    return SettlementStores(
        balances=MongoBalanceStore(applied_window=applied_window),
        ledger=MongoLedgerStore(),
        settlements=MongoSettlementStore(),
        transfers=MongoTransferStore(),
        audit=MongoAuditStore(),
        users=MongoUserStore(),
    )
