"""Store failures part way through a settlement, and recovery by resuming."""

import asyncio

import pytest

from nila_admin.core.exceptions import (
    ConflictError,
    NotFoundError,
    PartialFailureError,
    PersistenceError,
    SettlementTimeoutError,
)
from nila_admin.services.reconciliation import reconcile_settlements
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.records import SettlementStatus, SettlementStep


async def _boom(*args, **kwargs):
    raise RuntimeError("connection reset")


async def test_transfer_failure_is_partial_and_resumable(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    monkeypatch.setattr(stores.transfers, "create", _boom)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-TRANSFER-01"))

    err = exc.value
    assert err.code == "PARTIAL_FAILURE"
    assert err.step == "transferring"
    assert err.missing == ["transfer"]
    assert err.debit_applied is True
    assert "connection reset" in err.details["reason"]

    record = await stores.settlements.get("OPS-TRANSFER-01")
    assert record.status == SettlementStatus.FAILED
    assert record.step == SettlementStep.RECORDED
    assert record.failed_step == "transferring"
    assert (await stores.balances.get("user-1")).credit_balance == 300

    monkeypatch.undo()
    resumed = await service.resume_settlement("OPS-TRANSFER-01", actor="op-1")

    assert resumed.status == SettlementStatus.PROCESSED
    assert resumed.attempts == 2
    assert resumed.failed_step is None
    assert (await stores.balances.get("user-1")).credit_balance == 300
    assert len(await stores.ledger.list_by_reference("OPS-TRANSFER-01")) == 1
    assert len(await stores.transfers.list_by_settlement("OPS-TRANSFER-01")) == 1
    events = [e.event_type for e in stores.audit.events]
    assert events == ["settlement_failed", "settlement_resumed", "settlement_processed"]
    assert stores.audit.events[1].actor == "op-1"


async def test_ledger_failure_is_partial(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    monkeypatch.setattr(stores.ledger, "append", _boom)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-LEDGER-01"))

    assert exc.value.step == "recording"
    assert exc.value.missing == ["ledger_entry", "transfer"]
    record = await stores.settlements.get("OPS-LEDGER-01")
    assert record.step == SettlementStep.DEBITED
    assert await stores.transfers.get_by_settlement("OPS-LEDGER-01") is None

    monkeypatch.undo()
    resumed = await service.resume_settlement("OPS-LEDGER-01")
    assert resumed.status == SettlementStatus.PROCESSED
    entries = await stores.ledger.list_by_reference("OPS-LEDGER-01")
    assert [(e.balance_before, e.balance_after, e.sequence) for e in entries] == [(500, 300, 1)]


async def test_debit_failure_before_apply_is_a_clean_error(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    monkeypatch.setattr(stores.balances, "debit_if_version", _boom)

    with pytest.raises(PersistenceError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-DEBIT-01"))

    assert not isinstance(exc.value, PartialFailureError)
    assert exc.value.code == "PERSISTENCE_ERROR"
    assert exc.value.details["step"] == "recording"
    assert (await stores.balances.get("user-1")).credit_balance == 500
    record = await stores.settlements.get("OPS-DEBIT-01")
    assert record.status == SettlementStatus.FAILED
    assert record.step == SettlementStep.RESERVED
    assert await stores.ledger.list_by_reference("OPS-DEBIT-01") == []


async def test_debit_applied_but_reply_lost_is_partial(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    real_debit = stores.balances.debit_if_version

    async def debit_then_drop(*args):
        await real_debit(*args)
        raise RuntimeError("socket closed")

    monkeypatch.setattr(stores.balances, "debit_if_version", debit_then_drop)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-LOST-01"))

    assert exc.value.debit_applied is True
    assert exc.value.missing == ["ledger_entry", "transfer"]
    record = await stores.settlements.get("OPS-LOST-01")
    assert record.step == SettlementStep.DEBITED

    monkeypatch.undo()
    resumed = await service.resume_settlement("OPS-LOST-01")
    assert resumed.status == SettlementStatus.PROCESSED
    assert (await stores.balances.get("user-1")).credit_balance == 300


async def test_cursor_write_failure_after_debit_is_partial(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    real_update = stores.settlements.update

    async def flaky_update(settlement_id, changes):
        if changes == {"step": SettlementStep.DEBITED}:
            raise RuntimeError("write concern timeout")
        return await real_update(settlement_id, changes)

    monkeypatch.setattr(stores.settlements, "update", flaky_update)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-CURSOR-01"))

    assert exc.value.debit_applied is True
    record = await stores.settlements.get("OPS-CURSOR-01")
    assert record.status == SettlementStatus.FAILED
    assert record.step == SettlementStep.DEBITED
    assert (await stores.balances.get("user-1")).credit_balance == 300


async def test_slow_transfer_times_out_as_partial(stores, make_request, monkeypatch):
    service = SettlementService(stores, store_timeout=0.05, deadline=5.0)
    stores.balances.open_account("user-1", 500)

    async def slow_create(record):
        await asyncio.sleep(1)

    monkeypatch.setattr(stores.transfers, "create", slow_create)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-SLOW-01"))

    assert exc.value.step == "transferring"
    assert "timed out" in exc.value.details["reason"]
    assert await stores.transfers.get_by_settlement("OPS-SLOW-01") is None


async def test_slow_balance_read_times_out_before_anything_is_written(stores, make_request, monkeypatch):
    service = SettlementService(stores, store_timeout=0.05, deadline=5.0)
    stores.balances.open_account("user-1", 500)

    async def slow_get(user_id):
        await asyncio.sleep(1)

    monkeypatch.setattr(stores.balances, "get", slow_get)

    with pytest.raises(SettlementTimeoutError) as exc:
        await service.record_settlement(make_request())

    assert exc.value.code == "SETTLEMENT_TIMEOUT"
    assert exc.value.status_code == 504
    assert exc.value.step == "validating"
    assert await stores.settlements.count() == 0


async def test_settlement_deadline_caps_store_timeouts(stores, make_request, monkeypatch):
    service = SettlementService(stores, store_timeout=5.0, deadline=0.1)
    stores.balances.open_account("user-1", 500)

    async def slow_append(entry):
        await asyncio.sleep(1)

    monkeypatch.setattr(stores.ledger, "append", slow_append)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-DEADLINE-01"))

    assert exc.value.step == "recording"
    assert exc.value.debit_applied is True
    assert (await stores.settlements.get("OPS-DEADLINE-01")).step == SettlementStep.DEBITED


async def test_unmarked_failure_stays_pending_until_reconciled(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    real_update = stores.settlements.update

    async def no_failed_marks(settlement_id, changes):
        if changes.get("status") == SettlementStatus.FAILED:
            raise RuntimeError("primary stepped down")
        return await real_update(settlement_id, changes)

    monkeypatch.setattr(stores.transfers, "create", _boom)
    monkeypatch.setattr(stores.settlements, "update", no_failed_marks)

    with pytest.raises(PartialFailureError):
        await service.record_settlement(make_request(settlement_id="OPS-STUCK-01"))

    record = await stores.settlements.get("OPS-STUCK-01")
    assert record.status == SettlementStatus.PENDING
    assert record.step == SettlementStep.RECORDED

    monkeypatch.undo()
    # still looks in flight to a service that has not waited out the stale window
    with pytest.raises(ConflictError):
        await service.resume_settlement("OPS-STUCK-01")

    sweeper = SettlementService(stores, store_timeout=1.0, deadline=5.0, stale_after=0)
    result = await reconcile_settlements(sweeper)

    assert result.scanned == 1
    assert result.resumed == 1
    assert (await stores.settlements.get("OPS-STUCK-01")).status == SettlementStatus.PROCESSED
    assert len(await stores.transfers.list_by_settlement("OPS-STUCK-01")) == 1


async def test_replaying_a_failed_settlement_resumes_it(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    request = make_request(settlement_id="OPS-RETRY-01")
    monkeypatch.setattr(stores.transfers, "create", _boom)

    with pytest.raises(PartialFailureError):
        await service.record_settlement(request)

    monkeypatch.undo()
    settlement = await service.record_settlement(request)

    assert settlement.status == SettlementStatus.PROCESSED
    assert settlement.attempts == 2
    assert (await stores.balances.get("user-1")).credit_balance == 300
    assert len(await stores.ledger.list_by_reference("OPS-RETRY-01")) == 1


async def test_replaying_a_clean_failure_debits_on_retry(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    request = make_request(settlement_id="OPS-RETRY-02")
    monkeypatch.setattr(stores.balances, "debit_if_version", _boom)

    with pytest.raises(PersistenceError):
        await service.record_settlement(request)

    monkeypatch.undo()
    stores.balances.credit("user-1", 100)
    settlement = await service.record_settlement(request)

    assert settlement.status == SettlementStatus.PROCESSED
    assert settlement.balance_before == 600
    assert settlement.balance_after == 400
    assert settlement.expected_version == 1


async def test_resume_unknown_settlement(service):
    with pytest.raises(NotFoundError):
        await service.resume_settlement("OPS-MISSING-01")


async def test_resume_processed_settlement_is_a_noop(stores, service, make_request):
    stores.balances.open_account("user-1", 500)
    settlement = await service.record_settlement(make_request())

    again = await service.resume_settlement(settlement.settlement_id)

    assert again.status == SettlementStatus.PROCESSED
    assert again.attempts == 1
    assert (await stores.balances.get("user-1")).credit_balance == 300


async def test_unknown_debit_outcome_is_finished_by_the_sweep(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    real_debit = stores.balances.debit_if_version

    async def debit_then_drop(*args):
        await real_debit(*args)
        raise RuntimeError("socket closed")

    monkeypatch.setattr(stores.balances, "debit_if_version", debit_then_drop)
    monkeypatch.setattr(stores.balances, "has_applied", _boom)

    with pytest.raises(PartialFailureError) as exc:
        await service.record_settlement(make_request(settlement_id="OPS-UNKNOWN-01"))

    assert exc.value.debit_applied is None
    record = await stores.settlements.get("OPS-UNKNOWN-01")
    assert record.status == SettlementStatus.FAILED
    assert record.step == SettlementStep.RESERVED
    assert record.debit_unknown is True
    assert (await stores.balances.get("user-1")).credit_balance == 300

    monkeypatch.undo()
    result = await reconcile_settlements(service)

    assert result.scanned == 1
    assert result.resumed == 1
    record = await stores.settlements.get("OPS-UNKNOWN-01")
    assert record.status == SettlementStatus.PROCESSED
    assert record.debit_unknown is False
    assert (await stores.balances.get("user-1")).credit_balance == 300
    assert len(await stores.ledger.list_by_reference("OPS-UNKNOWN-01")) == 1
    assert len(await stores.transfers.list_by_settlement("OPS-UNKNOWN-01")) == 1


async def test_unknown_debit_outcome_that_never_landed_is_abandoned(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    monkeypatch.setattr(stores.balances, "debit_if_version", _boom)
    monkeypatch.setattr(stores.balances, "has_applied", _boom)

    with pytest.raises(PartialFailureError):
        await service.record_settlement(make_request(settlement_id="OPS-UNKNOWN-02"))

    monkeypatch.undo()
    result = await reconcile_settlements(service)

    assert result.abandoned == 1
    record = await stores.settlements.get("OPS-UNKNOWN-02")
    assert record.status == SettlementStatus.FAILED
    assert record.debit_unknown is False
    assert (await stores.balances.get("user-1")).credit_balance == 500
    assert await stores.ledger.list_by_reference("OPS-UNKNOWN-02") == []
    assert (await reconcile_settlements(service)).scanned == 0


async def test_sweep_counts_store_errors_and_keeps_going(stores, service, make_request, monkeypatch):
    stores.balances.open_account("user-1", 500)
    monkeypatch.setattr(stores.balances, "debit_if_version", _boom)
    monkeypatch.setattr(stores.balances, "has_applied", _boom)
    with pytest.raises(PartialFailureError):
        await service.record_settlement(make_request(settlement_id="OPS-UNKNOWN-03"))

    result = await reconcile_settlements(service)

    assert result.scanned == 1
    assert result.errors == 1
    assert (await stores.settlements.get("OPS-UNKNOWN-03")).debit_unknown is True
