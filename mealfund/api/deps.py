"""
FastAPI dependencies shared by the v1 routers.

Example usage in a router:
    from fastapi import Depends, APIRouter
    from mealfund.api import deps

    router = APIRouter()

    @router.get("/me")
    def read_me(current_user = Depends(deps.get_current_user)):
        return current_user
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from mealfund.config.settings import settings
from mealfund.core.exceptions import AuthenticationError, AuthorizationError, ResourceNotFoundError
from mealfund.core.logging import user_id as user_id_ctx
from mealfund.core.security import CurrentUser, JWTManager, UserRole
from mealfund.db.session import get_db
from mealfund.services.allocation.allocation_service import AllocationService
from mealfund.services.escrow.escrow_gateway import EscrowGateway, UnconfiguredEscrowGateway
from mealfund.services.payment.webhook_handler import PaymentWebhookHandler
from mealfund.services.reconciliation.event_reconciler import EventReconciler
from mealfund.services.settlement.settlement_orchestrator import SettlementOrchestrator
from mealfund.services.transparency.feed_projector import FeedProjector

_bearer = HTTPBearer(auto_error=False)


# --- Authentication & Authorization -------------------------------------------

def get_jwt_manager(request: Request) -> JWTManager:
    manager = getattr(request.app.state, "jwt_manager", None)
    if manager is None:
        manager = JWTManager(
            secret_key=settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            access_token_expire_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
        )
    return manager


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Bearer token required")
    user = jwt_manager.current_user(credentials.credentials)
    user_id_ctx.set(user.user_id)
    return user


def get_school_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current_user.role not in (UserRole.SCHOOL, UserRole.ADMIN):
        raise AuthorizationError("School or admin role required")
    return current_user


def get_admin_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        raise AuthorizationError("Admin role required")
    return current_user


# --- Collaborators -------------------------------------------------------------

def get_escrow_gateway(request: Request) -> EscrowGateway:
    gateway = getattr(request.app.state, "escrow_gateway", None)
    return gateway or UnconfiguredEscrowGateway()


def get_reconciler(request: Request) -> EventReconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise ResourceNotFoundError(message="Event reconciler is not configured")
    return reconciler


# --- Services ------------------------------------------------------------------

def get_settlement_orchestrator(
    db: Session = Depends(get_db),
    gateway: EscrowGateway = Depends(get_escrow_gateway),
) -> SettlementOrchestrator:
    return SettlementOrchestrator(db, gateway)


def get_allocation_service(
    db: Session = Depends(get_db),
    gateway: EscrowGateway = Depends(get_escrow_gateway),
) -> AllocationService:
    return AllocationService(db, gateway)


def get_feed_projector(db: Session = Depends(get_db)) -> FeedProjector:
    return FeedProjector(db)


def get_webhook_handler(db: Session = Depends(get_db)) -> PaymentWebhookHandler:
    return PaymentWebhookHandler(db)


__all__ = [
    "get_db",
    "get_jwt_manager",
    "get_current_user",
    "get_school_user",
    "get_admin_user",
    "get_escrow_gateway",
    "get_reconciler",
    "get_settlement_orchestrator",
    "get_allocation_service",
    "get_feed_projector",
    "get_webhook_handler",
]
