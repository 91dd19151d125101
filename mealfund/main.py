from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from mealfund.api.v1.router import router as api_v1_router
from mealfund.config.settings import settings
from mealfund.core.error_handlers import register_exception_handlers
from mealfund.core.logging import get_logger, setup_logging
from mealfund.core.middleware import register_middlewares
from mealfund.core.security import JWTManager
from mealfund.db.init_db import init_db
from mealfund.db.session import get_session_factory
from mealfund.services.escrow.escrow_gateway import EscrowGateway, LedgerEventSource
from mealfund.services.notification.notification_dispatcher import NotificationDispatcher
from mealfund.services.reconciliation.event_reconciler import EventReconciler

logger = get_logger(__name__)


def create_app(
    escrow_gateway: Optional[EscrowGateway] = None,
    event_source: Optional[LedgerEventSource] = None,
    session_factory: Optional[sessionmaker] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    """
    Application factory for the FastAPI app.

    - Configures title, version, debug mode from Settings.
    - Registers CORS, core middleware, and exception handlers.
    - Includes the versioned API router under /api/v1.
    - Starts and stops the event reconciler with the application when a
      ledger event source is supplied.

    Args:
        escrow_gateway: Ledger client used for lock and release. Without one,
            escrow calls fail and are safe to retry.
        event_source: Ledger event stream. Without one, no reconciler runs.
        session_factory: Session factory; defaults to the configured database.
        dispatcher: Notification dispatcher for release notifications.
    """
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.ENVIRONMENT != "production":
            # For dev/demo only; production schemas come from migrations
            factory = app.state.session_factory or get_session_factory()
            init_db(factory.kw["bind"])

        reconciler: Optional[EventReconciler] = app.state.reconciler
        if reconciler is not None and settings.RECONCILER_ENABLED:
            await reconciler.start()
        try:
            yield
        finally:
            if reconciler is not None:
                await reconciler.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        version=settings.API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory
    app.state.escrow_gateway = escrow_gateway
    app.state.event_source = event_source
    app.state.jwt_manager = JWTManager(
        secret_key=settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
        access_token_expire_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
    )
    app.state.reconciler = None
    if event_source is not None:
        app.state.reconciler = EventReconciler(
            session_factory or get_session_factory(),
            event_source,
            dispatcher=dispatcher,
            start_block=settings.RECONCILER_START_BLOCK,
            contract_address=escrow_gateway.contract_address if escrow_gateway else None,
        )
    elif escrow_gateway is None:
        logger.warning("No ledger client configured: escrow calls will fail and no events are reconciled")

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS or ["*"],
        allow_credentials=settings.CORS_ORIGINS != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register shared core middlewares (request ID, timing, etc.)
    register_middlewares(app)
    register_exception_handlers(app)

    # Mount API v1 under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    @app.get("/health", tags=["Health"])
    def health() -> dict:
        factory = app.state.session_factory or get_session_factory()
        database = "ok"
        try:
            with factory() as session:
                session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check database query failed: {e}")
            database = "unavailable"

        reconciler = app.state.reconciler
        return {
            "status": "ok" if database == "ok" else "degraded",
            "version": settings.API_VERSION,
            "database": database,
            "escrow_gateway": "configured" if app.state.escrow_gateway else "unconfigured",
            "reconciler": reconciler.status() if reconciler else None,
        }

    return app


app = create_app()
