"""Audit checks over the four settlement records, and the sweep that finishes interrupted settlements."""

from datetime import timedelta

from pydantic import BaseModel, Field

from nila_admin.core.exceptions import AppError, NotFoundError
from nila_admin.core.logging import get_logger
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.records import (
    SETTLEMENT_DEBIT,
    SettlementStatus,
    SettlementStep,
    utcnow,
)

log = get_logger(__name__)


class ConsistencyReport(BaseModel):
    settlement_id: str
    status: SettlementStatus
    step: SettlementStep
    ledger_entries: int
    transfers: int
    consistent: bool
    problems: list[str] = Field(default_factory=list)


class LedgerChainReport(BaseModel):
    user_id: str
    entries: int
    valid: bool
    problems: list[str] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    scanned: int = 0
    resumed: int = 0
    abandoned: int = 0
    errors: int = 0


async def check_settlement_consistency(service: SettlementService, settlement_id: str) -> ConsistencyReport:
    """
    A processed settlement must have exactly one ledger entry and one transfer.
    A settlement that never debited must have neither.
    """
    stores = service.stores
    record = await service.get_settlement(settlement_id)
    entries = await stores.ledger.list_by_reference(settlement_id)
    debit = await stores.ledger.get_by_reference(settlement_id, SETTLEMENT_DEBIT)
    transfers = await stores.transfers.list_by_settlement(settlement_id)
    problems = []

    if record.status == SettlementStatus.PROCESSED:
        if len(entries) != 1:
            problems.append(f"expected 1 ledger entry, found {len(entries)}")
        if len(transfers) != 1:
            problems.append(f"expected 1 transfer, found {len(transfers)}")
        if debit is None:
            problems.append(f"no {SETTLEMENT_DEBIT} ledger entry")
        elif debit.amount != -record.credits_used:
            problems.append(f"ledger amount {debit.amount} does not match credits_used {record.credits_used}")
        for e in entries:
            if e.balance_after != e.balance_before + e.amount:
                problems.append("ledger balance_after does not follow from balance_before and amount")
        for t in transfers:
            if t.nila_amount != record.reward_amount:
                problems.append(f"transfer amount {t.nila_amount} does not match reward_amount {record.reward_amount}")
    else:
        if len(entries) > 1:
            problems.append(f"found {len(entries)} ledger entries")
        if len(transfers) > 1:
            problems.append(f"found {len(transfers)} transfers")
        if not record.debit_applied and (entries or transfers):
            problems.append("downstream records exist for a settlement that never debited")

    return ConsistencyReport(
        settlement_id=settlement_id,
        status=record.status,
        step=record.step,
        ledger_entries=len(entries),
        transfers=len(transfers),
        consistent=not problems,
        problems=problems,
    )


async def verify_ledger_chain(service: SettlementService, user_id: str) -> LedgerChainReport:
    """
    Walk the user's ledger oldest first. Each entry must satisfy
    balance_after = balance_before + amount >= 0, and when sequences are
    consecutive the next entry must start where the previous one ended.
    A gap in sequence means the balance moved outside this ledger (e.g. a purchase).
    """
    await service.get_balance(user_id)
    entries = await service.stores.ledger.list_for_user(user_id, newest_first=False)
    problems = []
    prev = None
    for e in entries:
        if e.balance_after < 0:
            problems.append(f"{e.reference_id}: negative balance_after {e.balance_after}")
        if e.balance_after != e.balance_before + e.amount:
            problems.append(f"{e.reference_id}: balance_after {e.balance_after} != {e.balance_before} + {e.amount}")
        if prev is not None:
            if e.sequence <= prev.sequence:
                problems.append(f"{e.reference_id}: sequence {e.sequence} not after {prev.sequence}")
            elif e.sequence == prev.sequence + 1 and e.balance_before != prev.balance_after:
                problems.append(
                    f"{e.reference_id}: balance_before {e.balance_before} != previous balance_after {prev.balance_after}"
                )
        prev = e
    return LedgerChainReport(user_id=user_id, entries=len(entries), valid=not problems, problems=problems)


async def reconcile_settlements(service: SettlementService, limit: int = 50) -> ReconcileResult:
    """
    Finish what interrupted runs left behind:
    - debit applied but records missing -> resume from the step cursor;
    - stale pending, or failed with an unknown debit outcome, that never debited -> mark failed.
    """
    stores = service.stores
    stale_before = utcnow() - timedelta(seconds=service.stale_after)
    candidates = await stores.settlements.find_resumable(stale_before, limit)
    result = ReconcileResult(scanned=len(candidates))
    for record in candidates:
        try:
            if record.step == SettlementStep.RESERVED and not await stores.balances.has_applied(
                record.user_id, record.settlement_id
            ):
                claimed = await stores.settlements.claim(record.settlement_id, record.attempts)
                if claimed is None:
                    continue
                await stores.settlements.update(record.settlement_id, {
                    "status": SettlementStatus.FAILED,
                    "failed_step": "reserving",
                    "last_error": "Abandoned before the balance was debited",
                    "debit_unknown": False,
                })
                await service.audit(None, "settlement_abandoned", record)
                log.info("settlement_abandoned", settlement_id=record.settlement_id)
                result.abandoned += 1
                continue
            await service.resume_settlement(record.settlement_id)
            result.resumed += 1
        except NotFoundError:
            continue
        except AppError as e:
            log.warning("reconcile_failed", settlement_id=record.settlement_id, code=e.code, error=e.message)
            result.errors += 1
        except Exception:
            # store call outside the service (has_applied, claim); next sweep retries
            log.exception("reconcile_failed", settlement_id=record.settlement_id)
            result.errors += 1
    log.info("reconcile_done", **result.model_dump())
    return result
