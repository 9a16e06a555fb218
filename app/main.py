"""
Nearbuy Bot - FastAPI application.

The HTTP surface is small: the WhatsApp Cloud webhook under /api and two
health probes. Conversation turns that do not fit the inline budget, alert
batches and outbound delivery all run in the Celery workers.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.api.routes import router as api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.core.redis_client import close_redis
from app.db.database import create_tables, engine, get_session
from app.domain.services.fish.catalogue import seed_fish_types
from app.domain.services.health_service import check_readiness

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables()
    async with get_session() as db:
        seeded = await seed_fish_types(db)
    logger.info("Schema ready", extra_data={"fish_types_seeded": seeded})

    yield

    logger.info("Shutting down application")
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="WhatsApp bot for hyperlocal fresh-fish alerts, small agreements and local jobs.",
    openapi_tags=[
        {"name": "Webhooks", "description": "WhatsApp Cloud API webhook: verification, messages and delivery statuses."},
        {"name": "Health", "description": "Liveness and readiness probes."},
    ],
    lifespan=lifespan,
)

setup_middleware(app)
setup_exception_handlers(app)
app.include_router(api_router, prefix="/api")


@app.get("/health", summary="Liveness probe", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Process is up; dependencies are not checked so an outage never triggers a restart"""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    responses={
        200: {"description": "All dependencies available"},
        503: {"description": "At least one dependency unavailable"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """DB, Redis, the Celery broker and the WhatsApp circuit breaker"""
    result = await check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
