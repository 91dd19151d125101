"""
Administrative endpoints: allocation lifecycle and reconciliation.
"""

import asyncio

from fastapi import APIRouter, Depends, status

from mealfund.api import deps
from mealfund.core.security import CurrentUser
from mealfund.schemas.allocation import (
    AllocationCreate,
    AllocationDetail,
    AllocationReason,
    AllocationResponse,
    EscrowTransactionResponse,
)
from mealfund.schemas.reconciliation import CatchUpRequest, CatchUpResponse, ReconcilerStatus
from mealfund.services.allocation.allocation_service import AllocationService
from mealfund.services.reconciliation.event_reconciler import EventReconciler

router = APIRouter(prefix="/admin", tags=["Admin"])


# --- Allocations ---------------------------------------------------------------

@router.post("/allocations", response_model=AllocationResponse, status_code=status.HTTP_201_CREATED)
def create_allocation(
    payload: AllocationCreate,
    _: CurrentUser = Depends(deps.get_admin_user),
    service: AllocationService = Depends(deps.get_allocation_service),
) -> AllocationResponse:
    metadata = {
        key: value
        for key, value in {"portions": payload.portions, "notes": payload.notes}.items()
        if value is not None
    }
    allocation = service.create(
        school_id=payload.school_id,
        catering_id=payload.catering_id,
        amount=payload.amount,
        delivery_date=payload.delivery_date,
        delivery_id=payload.delivery_id,
        metadata=metadata,
    )
    return AllocationResponse.from_allocation(allocation)


@router.get("/allocations/{allocation_id}", response_model=AllocationDetail)
def get_allocation(
    allocation_id: str,
    _: CurrentUser = Depends(deps.get_admin_user),
    service: AllocationService = Depends(deps.get_allocation_service),
) -> AllocationDetail:
    allocation = service.get(allocation_id)
    history = [EscrowTransactionResponse.model_validate(r) for r in service.escrow_history(allocation)]
    return AllocationDetail.from_allocation(allocation, escrow_transactions=history)


@router.post("/allocations/{allocation_id}/lock", response_model=AllocationResponse)
def lock_allocation(
    allocation_id: str,
    _: CurrentUser = Depends(deps.get_admin_user),
    service: AllocationService = Depends(deps.get_allocation_service),
) -> AllocationResponse:
    return AllocationResponse.from_allocation(service.lock(allocation_id))


@router.post("/allocations/{allocation_id}/hold", response_model=AllocationResponse)
def hold_allocation(
    allocation_id: str,
    payload: AllocationReason,
    _: CurrentUser = Depends(deps.get_admin_user),
    service: AllocationService = Depends(deps.get_allocation_service),
) -> AllocationResponse:
    return AllocationResponse.from_allocation(service.hold(allocation_id, payload.reason))


@router.post("/allocations/{allocation_id}/cancel", response_model=AllocationResponse)
def cancel_allocation(
    allocation_id: str,
    payload: AllocationReason,
    _: CurrentUser = Depends(deps.get_admin_user),
    service: AllocationService = Depends(deps.get_allocation_service),
) -> AllocationResponse:
    return AllocationResponse.from_allocation(service.cancel(allocation_id, payload.reason))


# --- Reconciliation ------------------------------------------------------------

@router.post("/reconciliation/catch-up", response_model=CatchUpResponse)
async def catch_up(
    payload: CatchUpRequest,
    _: CurrentUser = Depends(deps.get_admin_user),
    reconciler: EventReconciler = Depends(deps.get_reconciler),
) -> CatchUpResponse:
    result = await asyncio.to_thread(reconciler.catch_up, payload.from_block, payload.to_block)
    return CatchUpResponse(**result)


@router.get("/reconciliation/status", response_model=ReconcilerStatus)
def reconciliation_status(
    _: CurrentUser = Depends(deps.get_admin_user),
    reconciler: EventReconciler = Depends(deps.get_reconciler),
) -> ReconcilerStatus:
    return ReconcilerStatus(**reconciler.status())
