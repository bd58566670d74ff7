"""
Settlement orchestration: turn a user's credits into a recorded NILA reward payout.

Four records are written in order without a multi-document transaction:
settlement (pending) -> balance debit + ledger entry -> transfer -> settlement (processed).
The settlement carries a step cursor so an interrupted run can be resumed with the
same settlement_id, and the balance debit is a compare-and-swap on the balance version.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from nila_admin.core.config import Settings, get_settings
from nila_admin.core.exceptions import (
    AppError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    PartialFailureError,
    PersistenceError,
    SettlementTimeoutError,
    ValidationError,
)
from nila_admin.core.logging import get_logger, settlement_context
from nila_admin.services.settlement_ids import generate_settlement_id, is_valid_settlement_id
from nila_admin.services.settlement_state import PhaseTracker, SettlementPhase
from nila_admin.stores.base import DuplicateRecordError, SettlementStores
from nila_admin.stores.records import (
    SETTLEMENT_DEBIT,
    AuditEvent,
    BalanceSnapshot,
    LedgerEntryRecord,
    SettlementRecord,
    SettlementRequest,
    SettlementStatus,
    SettlementStep,
    SettlementSummary,
    SettlementView,
    TransferRecord,
    TransferStatus,
    UserSummary,
    settlement_description,
    utcnow,
)

log = get_logger(__name__)

_RESUME_PHASE = {
    SettlementStep.RESERVED: SettlementPhase.VALIDATING,
    SettlementStep.DEBITED: SettlementPhase.RECORDING,
    SettlementStep.RECORDED: SettlementPhase.TRANSFERRING,
    SettlementStep.TRANSFERRED: SettlementPhase.TRANSFERRING,
}

# Records still missing when a settlement stops at a given step
_MISSING_AFTER = {
    SettlementStep.RESERVED: ["ledger_entry", "transfer"],
    SettlementStep.DEBITED: ["ledger_entry", "transfer"],
    SettlementStep.RECORDED: ["transfer"],
    SettlementStep.TRANSFERRED: [],
    SettlementStep.COMPLETED: [],
}


class SettlementService:
    def __init__(
        self,
        stores: SettlementStores,
        *,
        store_timeout: float = 5.0,
        deadline: float = 30.0,
        conflict_retries: int = 3,
        stale_after: float = 120.0,
        id_factory: Callable[[], str] = generate_settlement_id,
    ) -> None:
        self.stores = stores
        self.store_timeout = store_timeout
        self.deadline = deadline
        self.conflict_retries = conflict_retries
        self.stale_after = stale_after
        self.id_factory = id_factory
        self._inflight: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, stores: SettlementStores, settings: Settings | None = None) -> "SettlementService":
        s = settings or get_settings()
        return cls(
            stores,
            store_timeout=s.store_timeout_seconds,
            deadline=s.settlement_deadline_seconds,
            conflict_retries=s.settlement_conflict_retries,
            stale_after=s.reconcile_stale_after_seconds,
        )

    # -- commands --------------------------------------------------------

    async def record_settlement(self, request: SettlementRequest | Mapping[str, Any]) -> SettlementRecord:
        """
        Validate, reserve, debit, record and transfer. Returns the processed settlement.
        Replaying an existing settlement_id never debits twice.
        """
        request = _coerce_request(request)
        if request.settlement_id is not None and not is_valid_settlement_id(request.settlement_id):
            raise ValidationError("Invalid settlement_id", details={"field": "settlement_id"})
        return await self._shielded(self._record(request))

    async def resume_settlement(self, settlement_id: str, actor: str | None = None) -> SettlementRecord:
        """Re-drive an interrupted settlement from its persisted step."""
        record = await self._read(self.stores.settlements.get, settlement_id)
        if record is None:
            raise NotFoundError(f"Settlement {settlement_id} not found", details={"settlement_id": settlement_id})
        if record.status == SettlementStatus.PROCESSED:
            return record
        self._ensure_not_in_flight(record)
        return await self._shielded(self._resume(record, actor=actor))

    # -- queries ---------------------------------------------------------

    async def get_settlement(self, settlement_id: str) -> SettlementRecord:
        record = await self._read(self.stores.settlements.get, settlement_id)
        if record is None:
            raise NotFoundError(f"Settlement {settlement_id} not found", details={"settlement_id": settlement_id})
        return record

    async def list_settlements(
        self,
        limit: int = 50,
        offset: int = 0,
        status: SettlementStatus | None = None,
    ) -> tuple[list[SettlementView], int]:
        """Newest first, each with the user's name, email and current balance when the user is known."""
        items = await self._read(self.stores.settlements.list_recent, limit, offset, status)
        total = await self._read(self.stores.settlements.count, status)
        users = await self._read(self.stores.users.get_many, sorted({r.user_id for r in items}))
        views = [SettlementView(**r.model_dump(), user=users.get(r.user_id)) for r in items]
        return views, total

    async def settlement_summary(self) -> SettlementSummary:
        return await self._read(self.stores.settlements.summary, day_start_utc())

    async def get_balance(self, user_id: str) -> BalanceSnapshot:
        snapshot = await self._read(self.stores.balances.get, user_id)
        if snapshot is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return snapshot

    async def list_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[list[LedgerEntryRecord], int]:
        entries = await self._read(self.stores.ledger.list_for_user, user_id, limit, offset)
        total = await self._read(self.stores.ledger.count_for_user, user_id)
        return entries, total

    async def list_users(self, limit: int = 50, offset: int = 0) -> tuple[list[UserSummary], int]:
        users = await self._read(self.stores.users.list_with_balances, limit, offset)
        total = await self._read(self.stores.users.count)
        return users, total

    # -- internals -------------------------------------------------------

    async def _shielded(self, coro: Awaitable[SettlementRecord]) -> SettlementRecord:
        # A cancelled caller must not cancel the saga: it keeps running until it completes or fails.
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._saga_done)
        return await asyncio.shield(task)

    def _saga_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled():
            # retrieve so an abandoned task does not warn; the saga already logged its failure
            task.exception()

    async def wait_inflight(self) -> None:
        """Wait for sagas whose callers went away (shutdown, tests)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _read(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(fn(*args), self.store_timeout)
        except asyncio.TimeoutError as e:
            raise SettlementTimeoutError("read", f"Store read timed out after {self.store_timeout:.1f}s") from e
        except AppError:
            raise
        except Exception as e:
            raise PersistenceError("read", f"{type(e).__name__}: {e}") from e

    def _is_stale(self, record: SettlementRecord) -> bool:
        updated = record.updated_at if record.updated_at.tzinfo else record.updated_at.replace(tzinfo=timezone.utc)
        return updated < utcnow() - timedelta(seconds=self.stale_after)

    def _ensure_not_in_flight(self, record: SettlementRecord) -> None:
        if record.status == SettlementStatus.PENDING and not self._is_stale(record):
            raise ConflictError(
                "Settlement is already in progress",
                details={"settlement_id": record.settlement_id, "step": record.step.value},
            )

    async def _record(self, request: SettlementRequest) -> SettlementRecord:
        attempt = _Attempt(self)
        if request.settlement_id is not None:
            existing = await attempt.call(self.stores.settlements.get, request.settlement_id)
            if existing is not None:
                return await self._replay(existing, request)
        snapshot = await attempt.validate(request.user_id, request.credits_used)

        attempt.tracker.advance(SettlementPhase.RESERVING)
        record = SettlementRecord(
            settlement_id=request.settlement_id or self.id_factory(),
            user_id=request.user_id,
            credits_used=request.credits_used,
            reward_amount=request.reward_amount,
            network=request.network,
            wallet_address=request.wallet_address,
            transaction_hash=request.transaction_hash,
            notes=request.notes,
            performed_by=request.performed_by,
            balance_before=snapshot.credit_balance,
            balance_after=snapshot.credit_balance - request.credits_used,
            expected_version=snapshot.version,
        )
        try:
            record = await attempt.call(self.stores.settlements.create, record)
        except DuplicateRecordError as e:
            raise ConflictError(
                "Settlement id already exists",
                details={"settlement_id": record.settlement_id},
            ) from e
        with settlement_context(record.settlement_id, record.user_id):
            log.info("settlement_reserved", credits_used=record.credits_used, balance_before=record.balance_before)
            return await attempt.drive(record, actor=request.performed_by)

    async def _replay(self, existing: SettlementRecord, request: SettlementRequest) -> SettlementRecord:
        if not existing.matches(request):
            raise ConflictError(
                "Settlement id already used for a different request",
                details={"settlement_id": existing.settlement_id},
            )
        if existing.status == SettlementStatus.PROCESSED:
            log.info("settlement_replayed", settlement_id=existing.settlement_id)
            return existing
        self._ensure_not_in_flight(existing)
        return await self._resume(existing, actor=request.performed_by)

    async def _resume(self, record: SettlementRecord, actor: str | None) -> SettlementRecord:
        attempt = _Attempt(self, start=_RESUME_PHASE.get(record.step, SettlementPhase.VALIDATING))
        claimed = await attempt.call(self.stores.settlements.claim, record.settlement_id, record.attempts)
        if claimed is None:
            raise ConflictError(
                "Settlement is being resumed elsewhere",
                details={"settlement_id": record.settlement_id},
            )
        with settlement_context(claimed.settlement_id, claimed.user_id):
            log.info("settlement_resumed", step=claimed.step.value, attempts=claimed.attempts)
            await self.audit(actor, "settlement_resumed", claimed, {"step": claimed.step.value})
            if claimed.step == SettlementStep.RESERVED:
                claimed = await attempt.settle_reserved(claimed)
            return await attempt.drive(claimed, actor=actor)

    async def audit(self, actor: str | None, event_type: str, record: SettlementRecord, extra: dict | None = None) -> None:
        event = AuditEvent(
            actor=actor,
            event_type=event_type,
            entity_type="settlement",
            entity_id=record.settlement_id,
            metadata={
                "user_id": record.user_id,
                "credits_used": record.credits_used,
                "reward_amount": str(record.reward_amount),
                "network": record.network.value,
                **(extra or {}),
            },
        )
        try:
            await asyncio.wait_for(self.stores.audit.append(event), self.store_timeout)
        except Exception:
            # the settlement outcome is already persisted; a lost audit line must not change it
            log.warning("audit_write_failed", event_type=event_type, settlement_id=record.settlement_id, exc_info=True)


class _Attempt:
    """One run of the saga for one settlement: phase tracking, deadline and failure handling."""

    def __init__(self, service: SettlementService, start: SettlementPhase = SettlementPhase.VALIDATING) -> None:
        self.service = service
        self.stores = service.stores
        self.tracker = PhaseTracker(start)
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._deadline = loop.time() + service.deadline

    async def call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one store call under the per-call timeout and the attempt deadline."""
        step = self.tracker.phase.value
        remaining = self._deadline - self._loop.time()
        if remaining <= 0:
            raise SettlementTimeoutError(step, "Settlement deadline exceeded")
        timeout = min(self.service.store_timeout, remaining)
        try:
            return await asyncio.wait_for(fn(*args), timeout)
        except asyncio.TimeoutError as e:
            raise SettlementTimeoutError(step, f"Store call timed out after {timeout:.2f}s") from e
        except (AppError, DuplicateRecordError):
            raise
        except Exception as e:
            raise PersistenceError(step, f"{type(e).__name__}: {e}") from e

    async def validate(self, user_id: str, credits_used: int) -> BalanceSnapshot:
        snapshot = await self.call(self.stores.balances.get, user_id)
        if snapshot is None:
            raise ValidationError("User not found", details={"field": "user_id", "user_id": user_id})
        if credits_used > snapshot.credit_balance:
            raise InsufficientBalanceError(snapshot.credit_balance, credits_used, user_id=user_id)
        return snapshot

    def enter(self, phase: SettlementPhase) -> None:
        if self.tracker.phase != phase:
            self.tracker.advance(phase)

    async def settle_reserved(self, record: SettlementRecord) -> SettlementRecord:
        """Resume at the reserved step: find out whether the debit landed before re-validating."""
        try:
            applied = await self.call(self.stores.balances.has_applied, record.user_id, record.settlement_id)
            if applied:
                return await self.call(
                    self.stores.settlements.update,
                    record.settlement_id,
                    {"step": SettlementStep.DEBITED, "debit_unknown": False},
                )
            snapshot = await self.validate(record.user_id, record.credits_used)
            return await self.call(
                self.stores.settlements.update,
                record.settlement_id,
                {**_intent(snapshot, record.credits_used), "debit_unknown": False},
            )
        except Exception as exc:
            raise await self.fail(record, exc)

    async def drive(self, record: SettlementRecord, actor: str | None) -> SettlementRecord:
        try:
            if record.step == SettlementStep.RESERVED:
                record = await self._debit(record)
            if record.step == SettlementStep.DEBITED:
                record = await self._write_ledger(record)
            if record.step == SettlementStep.RECORDED:
                record = await self._write_transfer(record)
            if record.step == SettlementStep.TRANSFERRED:
                record = await self._complete(record)
        except Exception as exc:
            raise await self.fail(record, exc)
        log.info("settlement_processed", balance_after=record.balance_after, attempts=record.attempts)
        await self.service.audit(actor, "settlement_processed", record, {"balance_after": record.balance_after})
        return record

    async def _debit(self, record: SettlementRecord) -> SettlementRecord:
        self.enter(SettlementPhase.RECORDING)
        for attempt in range(self.service.conflict_retries + 1):
            snapshot = await self.call(
                self.stores.balances.debit_if_version,
                record.user_id,
                record.expected_version,
                record.credits_used,
                record.settlement_id,
            )
            if snapshot is not None:
                log.info("settlement_debit_applied", balance_after=snapshot.credit_balance, version=snapshot.version)
                return await self.call(
                    self.stores.settlements.update,
                    record.settlement_id,
                    {"step": SettlementStep.DEBITED},
                )
            # Lost the compare-and-swap: someone else moved this balance since we read it.
            self.tracker.advance(SettlementPhase.VALIDATING)
            fresh = await self.call(self.stores.balances.get, record.user_id)
            if fresh is None or fresh.credit_balance < record.credits_used:
                raise ConflictError(
                    "Balance changed before commit and no longer covers the settlement",
                    details={
                        "settlement_id": record.settlement_id,
                        "current_balance": fresh.credit_balance if fresh else None,
                        "requested": record.credits_used,
                    },
                )
            log.info("settlement_debit_conflict", retry=attempt + 1, version=fresh.version)
            record = await self.call(
                self.stores.settlements.update,
                record.settlement_id,
                _intent(fresh, record.credits_used),
            )
            self.tracker.advance(SettlementPhase.RECORDING)
        raise ConflictError(
            "Balance kept changing; gave up",
            details={"settlement_id": record.settlement_id, "retries": self.service.conflict_retries},
        )

    async def _write_ledger(self, record: SettlementRecord) -> SettlementRecord:
        self.enter(SettlementPhase.RECORDING)
        entry = LedgerEntryRecord(
            user_id=record.user_id,
            amount=-record.credits_used,
            transaction_type=SETTLEMENT_DEBIT,
            reference_id=record.settlement_id,
            balance_before=record.balance_before,
            balance_after=record.balance_after,
            sequence=record.expected_version + 1,
            description=settlement_description(record.settlement_id),
        )
        try:
            await self.call(self.stores.ledger.append, entry)
        except DuplicateRecordError:
            log.info("ledger_entry_exists")
        return await self.call(self.stores.settlements.update, record.settlement_id, {"step": SettlementStep.RECORDED})

    async def _write_transfer(self, record: SettlementRecord) -> SettlementRecord:
        self.enter(SettlementPhase.TRANSFERRING)
        transfer = TransferRecord(
            user_id=record.user_id,
            settlement_id=record.settlement_id,
            nila_amount=record.reward_amount,
            network=record.network,
            wallet_address=record.wallet_address,
            transaction_hash=record.transaction_hash,
            status=TransferStatus.COMPLETED,
            notes=settlement_description(record.settlement_id),
        )
        try:
            await self.call(self.stores.transfers.create, transfer)
        except DuplicateRecordError:
            log.info("transfer_exists")
        return await self.call(self.stores.settlements.update, record.settlement_id, {"step": SettlementStep.TRANSFERRED})

    async def _complete(self, record: SettlementRecord) -> SettlementRecord:
        self.enter(SettlementPhase.TRANSFERRING)
        record = await self.call(
            self.stores.settlements.update,
            record.settlement_id,
            {
                "status": SettlementStatus.PROCESSED,
                "step": SettlementStep.COMPLETED,
                "failed_step": None,
                "last_error": None,
                "debit_unknown": False,
            },
        )
        self.tracker.advance(SettlementPhase.COMPLETED)
        return record

    async def fail(self, record: SettlementRecord, exc: Exception) -> AppError:
        """Mark the settlement failed and translate exc into what the caller should see."""
        failed_step = self.tracker.phase.value
        if not self.tracker.done:
            self.tracker.advance(SettlementPhase.FAILED)
        error = exc if isinstance(exc, AppError) else PersistenceError(failed_step, f"{type(exc).__name__}: {exc}")

        debit_applied: bool | None = record.debit_applied
        if not debit_applied:
            debit_applied = await self._check_debit_landed(record)

        changes: dict[str, Any] = {
            "status": SettlementStatus.FAILED,
            "failed_step": failed_step,
            "last_error": error.message[:500],
        }
        if debit_applied and record.step == SettlementStep.RESERVED:
            changes["step"] = SettlementStep.DEBITED
        elif debit_applied is None:
            # reserved + unknown outcome: the sweep asks the balance again before resuming or abandoning
            changes["debit_unknown"] = True
        try:
            await asyncio.wait_for(
                self.stores.settlements.update(record.settlement_id, changes),
                self.service.store_timeout,
            )
        except Exception:
            # stays pending; the reconciler picks it up once it goes stale
            log.exception("settlement_mark_failed_error", failed_step=failed_step)

        log.warning(
            "settlement_failed",
            failed_step=failed_step,
            error_code=error.code,
            error=error.message,
            debit_applied=debit_applied,
        )
        await self.service.audit(
            None,
            "settlement_failed",
            record,
            {"failed_step": failed_step, "error_code": error.code, "debit_applied": debit_applied},
        )
        if debit_applied is False:
            return error
        step = changes.get("step", record.step)
        return PartialFailureError(
            record.settlement_id,
            failed_step,
            missing=_MISSING_AFTER[step],
            reason=error.message,
            debit_applied=debit_applied,
        )

    async def _check_debit_landed(self, record: SettlementRecord) -> bool | None:
        """Whether the balance carries this settlement's debit; None when the store cannot tell us."""
        if record.attempts == 1 and SettlementPhase.RECORDING not in self.tracker.history:
            return False
        try:
            return await asyncio.wait_for(
                self.stores.balances.has_applied(record.user_id, record.settlement_id),
                self.service.store_timeout,
            )
        except Exception:
            log.warning("settlement_debit_check_failed", exc_info=True)
            return None


def _intent(snapshot: BalanceSnapshot, credits_used: int) -> dict[str, Any]:
    return {
        "balance_before": snapshot.credit_balance,
        "balance_after": snapshot.credit_balance - credits_used,
        "expected_version": snapshot.version,
    }


def _coerce_request(request: SettlementRequest | Mapping[str, Any]) -> SettlementRequest:
    if isinstance(request, SettlementRequest):
        return request
    try:
        return SettlementRequest.model_validate(dict(request))
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError(
            "Invalid settlement request",
            details={"fields": fields, "errors": [{"loc": f, "msg": err["msg"]} for f, err in zip(fields, e.errors())]},
        ) from e


def day_start_utc(now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
