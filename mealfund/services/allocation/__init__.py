from mealfund.services.allocation.allocation_ledger import AllocationLedger, TransitionResult
from mealfund.services.allocation.allocation_service import AllocationService

__all__ = ["AllocationLedger", "AllocationService", "TransitionResult"]
