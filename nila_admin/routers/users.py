from fastapi import APIRouter, Depends, Query

from nila_admin.core.pagination import Page, paginate
from nila_admin.deps import Operator, get_settlement_service, require_admin
from nila_admin.services import reconciliation
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.records import BalanceSnapshot, LedgerEntryRecord, UserSummary

router = APIRouter()


@router.get("", response_model=Page[UserSummary])
async def list_users(
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Users by name with their credit balance, for picking who to settle."""
    limit, offset = paginate(limit, offset)
    users, total = await service.list_users(limit, offset)
    return Page[UserSummary](items=users, limit=limit, offset=offset, total=total)


@router.get("/{user_id}/balance", response_model=BalanceSnapshot)
async def user_balance(
    user_id: str,
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    """Return current credit balance."""
    return await service.get_balance(user_id)


@router.get("/{user_id}/ledger", response_model=Page[LedgerEntryRecord])
async def user_ledger(
    user_id: str,
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for the user (newest first)."""
    entries, total = await service.list_ledger(user_id, limit, offset)
    return Page[LedgerEntryRecord](items=entries, limit=limit, offset=offset, total=total)


@router.get("/{user_id}/ledger/verify", response_model=reconciliation.LedgerChainReport)
async def verify_user_ledger(
    user_id: str,
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return await reconciliation.verify_ledger_chain(service, user_id)
