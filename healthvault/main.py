"""
ASGI entry point: the read-only audit API and a health probe over one record pipeline.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from healthvault.core.config import get_settings
from healthvault.core.errors import HealthVaultError
from healthvault.core.logging import configure_logging, get_logger
from healthvault.modules.audit.router import router as audit_router
from healthvault.modules.records.pipeline import HealthRecordPipeline, create_pipeline

# Logging must be configured before any module logs at import time
configure_logging()
logger = get_logger(__name__)


def _attach_pipeline(app: FastAPI, pipeline: HealthRecordPipeline) -> None:
    app.state.pipeline = pipeline
    app.state.audit_projector = pipeline.projector
    app.state.ledger = pipeline.registrar.backend


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the pipeline from settings unless one was injected, and closes
    its HTTP clients on shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
    )

    owns_pipeline = getattr(app.state, "pipeline", None) is None
    if owns_pipeline:
        _attach_pipeline(app, create_pipeline(settings))
        logger.info("pipeline_initialized")

    yield

    if owns_pipeline:
        await app.state.pipeline.close()
    logger.info("application_shutdown_complete")


def create_application(pipeline: HealthRecordPipeline | None = None) -> FastAPI:
    """
    Application factory function.

    An injected ``pipeline`` is attached immediately so the app also serves
    requests when driven without its lifespan (e.g. ``httpx.ASGITransport``).
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )
    if pipeline is not None:
        _attach_pipeline(app, pipeline)

    # Probes the ledger only; key servers and blob store are not contacted
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        ledger = getattr(app.state, "ledger", None)
        if ledger is None:
            checks["ledger"] = "unconfigured"
        else:
            try:
                await ledger.query_events(limit=1)
                checks["ledger"] = "ok"
            except HealthVaultError as exc:
                logger.warning("health_check_ledger_unavailable", code=exc.code)
                checks["ledger"] = "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        audit_router,
        prefix=settings.api_v1_prefix,
        tags=["Audit"],
    )

    return app


# Application instance
app = create_application()
