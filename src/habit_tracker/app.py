"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware

from habit_tracker.api.routes import nft
from habit_tracker.core.config import Settings, configure_logging
from habit_tracker.services.exceptions import ServiceError
from habit_tracker.services.tracker.service import HabitTokenService, create_service

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup tasks:
    - Configure logging
    - Wire the HabitTokenService (contract, node RPC, network, prover)

    A service injected through create_app() is kept as-is. When wiring fails
    (contract not built, node unreachable) the app still starts so /health
    can report the reason; token endpoints answer 503 until restart.
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    if getattr(app.state, "service", None) is None:
        try:
            app.state.service = await create_service(settings)
            app.state.startup_error = None
        except ServiceError as e:
            logger.error(
                "startup.service_unavailable",
                error=str(e),
                error_type=type(e).__name__,
            )
            app.state.service = None
            app.state.startup_error = str(e)

    service = app.state.service
    logger.info(
        "application.startup",
        network=service.network.value if service else None,
        rpc_url=settings.bitcoin_rpc_url,
    )

    yield

    logger.info("application.shutdown")


def create_app(
    settings: Optional[Settings] = None, service: Optional[HabitTokenService] = None
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Application settings (default: loaded from environment)
        service: Pre-wired service (tests); wired from settings at startup otherwise

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Habit Tracker API",
        description="Habit tracking NFTs on Bitcoin via Charms",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.startup_error = None

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routers
    app.include_router(nft.router)  # NFT router has prefix="/api/nft" in definition
    app.add_exception_handler(ServiceError, nft.service_error_handler)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint.

        Returns:
            200: {"status": "healthy", "network": ...} when the service is wired
            503: {"status": "unhealthy", "error": ...} otherwise
        """
        current = app.state.service
        if current is None:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": app.state.startup_error or "service not initialized",
            }

        logger.debug("health_check.success")
        return {"status": "healthy", "network": current.network.value}

    return app
