"""Concurrent settlements against one balance."""

import asyncio

import pytest

from nila_admin.core.exceptions import ConflictError, InsufficientBalanceError
from nila_admin.services.reconciliation import verify_ledger_chain
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.records import SettlementStatus, SettlementStep


async def test_two_concurrent_settlements_cannot_overdraw(stores, service, make_request):
    stores.balances.open_account("user-1", 500)

    results = await asyncio.gather(
        service.record_settlement(make_request(credits_used=300)),
        service.record_settlement(make_request(credits_used=300)),
        return_exceptions=True,
    )

    processed = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(processed) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], ConflictError)
    assert processed[0].balance_after == 200
    assert (await stores.balances.get("user-1")).credit_balance == 200

    entries = await stores.ledger.list_for_user("user-1")
    assert len(entries) == 1
    assert entries[0].balance_after == 200

    failed, _ = await service.list_settlements(10, 0, SettlementStatus.FAILED)
    assert len(failed) == 1
    assert failed[0].step == SettlementStep.RESERVED
    assert await stores.transfers.get_by_settlement(failed[0].settlement_id) is None


async def test_many_concurrent_settlements_keep_the_ledger_consistent(stores, make_request):
    service = SettlementService(stores, store_timeout=1.0, deadline=5.0, conflict_retries=10)
    stores.balances.open_account("user-1", 500)

    results = await asyncio.gather(
        *(service.record_settlement(make_request(credits_used=100)) for _ in range(7)),
        return_exceptions=True,
    )

    processed = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(e, (ConflictError, InsufficientBalanceError)) for e in errors)
    assert len(processed) == 5
    balance = await stores.balances.get("user-1")
    assert balance.credit_balance == 0

    report = await verify_ledger_chain(service, "user-1")
    assert report.valid, report.problems
    assert report.entries == 5


async def test_lost_race_retries_when_balance_still_covers(stores, service, make_request):
    stores.balances.open_account("user-1", 1000)

    results = await asyncio.gather(
        service.record_settlement(make_request(credits_used=300)),
        service.record_settlement(make_request(credits_used=300)),
    )

    assert all(r.status == SettlementStatus.PROCESSED for r in results)
    assert sorted(r.balance_after for r in results) == [400, 700]
    assert (await stores.balances.get("user-1")).credit_balance == 400
    assert max(r.expected_version for r in results) == 1


async def test_concurrent_replays_of_one_settlement_id_debit_once(stores, service, make_request):
    stores.balances.open_account("user-1", 500)
    request = make_request(credits_used=100, settlement_id="OPS-RACE-0001")

    results = await asyncio.gather(
        service.record_settlement(request),
        service.record_settlement(request),
        return_exceptions=True,
    )

    processed = [r for r in results if not isinstance(r, Exception)]
    assert len(processed) >= 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
    assert (await stores.balances.get("user-1")).credit_balance == 400
    assert len(await stores.ledger.list_by_reference("OPS-RACE-0001")) == 1
    assert len(await stores.transfers.list_by_settlement("OPS-RACE-0001")) == 1


async def test_cancelled_caller_does_not_abort_the_settlement(stores, service, make_request):
    stores.balances.open_account("user-1", 500)

    task = asyncio.create_task(service.record_settlement(make_request(settlement_id="OPS-CANCEL-01")))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await service.wait_inflight()
    settlement = await stores.settlements.get("OPS-CANCEL-01")
    assert settlement.status == SettlementStatus.PROCESSED
    assert (await stores.balances.get("user-1")).credit_balance == 300
