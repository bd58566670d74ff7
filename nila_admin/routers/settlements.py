from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from nila_admin.core.pagination import Page, paginate
from nila_admin.deps import Operator, get_settlement_service, require_admin
from nila_admin.services import reconciliation
from nila_admin.services.settlements import SettlementService
from nila_admin.stores.records import Network, SettlementRecord, SettlementStatus, SettlementSummary, SettlementView

router = APIRouter()


class RecordSettlementBody(BaseModel):
    user_id: str
    credits_used: int = Field(..., gt=0)
    reward_amount: Decimal = Field(..., ge=0)
    network: Network
    wallet_address: str
    transaction_hash: str | None = None
    notes: str | None = None
    settlement_id: str | None = Field(default=None, description="Idempotency key; reuse it to retry safely")


@router.post("", response_model=SettlementRecord, status_code=status.HTTP_201_CREATED)
async def record_settlement(
    body: RecordSettlementBody,
    operator: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    """Record a digital asset reward settlement: debit credits, write ledger entry and NILA transfer."""
    # SettlementRequest rules (trimming, reward precision) are enforced by the service
    return await service.record_settlement({**body.model_dump(), "performed_by": operator.operator_id})


@router.get("", response_model=Page[SettlementView])
async def list_settlements(
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status_filter: SettlementStatus | None = Query(None, alias="status"),
):
    """Settlements, newest first, with the user's name, email and balance."""
    limit, offset = paginate(limit, offset)
    items, total = await service.list_settlements(limit, offset, status_filter)
    return Page[SettlementView](items=items, limit=limit, offset=offset, total=total)


@router.get("/summary", response_model=SettlementSummary)
async def settlement_summary(
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return await service.settlement_summary()


@router.get("/{settlement_id}", response_model=SettlementRecord)
async def get_settlement(
    settlement_id: str,
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return await service.get_settlement(settlement_id)


@router.get("/{settlement_id}/consistency", response_model=reconciliation.ConsistencyReport)
async def settlement_consistency(
    settlement_id: str,
    _: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    """Check the settlement against its ledger entry and transfer (1:1)."""
    return await reconciliation.check_settlement_consistency(service, settlement_id)


@router.post("/{settlement_id}/resume", response_model=SettlementRecord)
async def resume_settlement(
    settlement_id: str,
    operator: Operator = Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    """Re-drive a failed or stuck settlement from its last persisted step."""
    return await service.resume_settlement(settlement_id, actor=operator.operator_id)
