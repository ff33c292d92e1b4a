# backend/lessonbook/main.py
"""
Application entry point.

Wires the scheduling container to the FastAPI lifespan and translates
domain exceptions into HTTP responses. Only a health probe is exposed here;
callers mount their own routes on top of ``get_scheduling_service``.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import Settings, settings
from .core.exceptions import DomainException
from .database import init_db
from .services.dependencies import SchedulingContainer

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, DomainException)
    http_exc = exc.to_http_exception()
    if http_exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


def create_app(
    config: Optional[Settings] = None, container: Optional[SchedulingContainer] = None
) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Handle application startup/shutdown without deprecated events."""
        logger.info(f"Scheduling API starting up (environment: {config.environment})")
        init_db()
        scheduling = container or SchedulingContainer(config)
        app.state.scheduling = scheduling
        await scheduling.startup()
        try:
            yield
        finally:
            await scheduling.shutdown()
            logger.info("Scheduling API shut down")

    app = FastAPI(title="Lesson Scheduling API", lifespan=app_lifespan)
    app.add_exception_handler(DomainException, domain_exception_handler)

    @app.get("/health", include_in_schema=False)
    def health_check() -> Dict[str, str]:
        return {"status": "healthy", "environment": config.environment}

    return app


app = create_app()
