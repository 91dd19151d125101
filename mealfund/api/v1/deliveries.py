"""
School-facing delivery confirmation endpoint.
"""

from fastapi import APIRouter, Depends, Path, status

from mealfund.api import deps
from mealfund.core.security import CurrentUser
from mealfund.schemas.confirmation import DeliveryConfirmationRequest, DeliveryConfirmationResponse
from mealfund.services.settlement.settlement_orchestrator import ConfirmationInput, SettlementOrchestrator

router = APIRouter(prefix="/school/deliveries", tags=["School Deliveries"])


@router.post(
    "/{delivery_id}/confirm",
    response_model=DeliveryConfirmationResponse,
    status_code=status.HTTP_200_OK,
    responses={
        409: {"description": "Delivery already confirmed or allocation not locked"},
        502: {"description": "Escrow release failed; safe to retry"},
        504: {"description": "Escrow release timed out; outcome unknown"},
    },
)
def confirm_delivery(
    payload: DeliveryConfirmationRequest,
    delivery_id: int = Path(..., gt=0),
    current_user: CurrentUser = Depends(deps.get_school_user),
    orchestrator: SettlementOrchestrator = Depends(deps.get_settlement_orchestrator),
) -> DeliveryConfirmationResponse:
    """
    Approve or reject a delivery.

    Approval releases the allocation's escrow to the caterer; rejection
    opens a quality issue and leaves the funds locked.
    """
    result = orchestrator.confirm_delivery(
        delivery_id,
        current_user,
        ConfirmationInput(
            accepted=payload.accepted,
            portions_received=payload.portions_received,
            quality_rating=payload.quality_rating,
            notes=payload.notes,
            evidence=payload.evidence,
        ),
    )
    return DeliveryConfirmationResponse(**result.to_dict())
