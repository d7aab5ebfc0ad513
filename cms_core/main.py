import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI

from cms_core.config import Settings, settings
from cms_core.database import Base, engine
from cms_core.exception_handlers import register_exception_handlers
from cms_core.plugins.loader import build_registry
from cms_core.plugins.registry import PluginRegistry
from cms_core.routes import plugins
from cms_core.routes.plugins import require_admin

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Boot the plugin runtime on startup, drain it on shutdown."""
    logger.info("Starting up the application...")
    app_settings: Settings = app.state.settings
    if app_settings.debug and app.state.plugin_registry is None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created (if not existing).")

    registry: PluginRegistry | None = app.state.plugin_registry
    if registry is None:
        registry = build_registry(app_settings)
        app.state.plugin_registry = registry
    if not registry.frozen:
        await registry.load_all()
    registry.materialize_routes(app, admin_dependencies=[Depends(require_admin)])

    job_queue = registry.scheduler.job_queue
    started_scheduler = isinstance(job_queue, AsyncIOScheduler) and not job_queue.running
    if started_scheduler:
        job_queue.start()

    try:
        yield
    finally:
        logger.info("Shutting down the application...")
        await registry.aclose()
        if started_scheduler:
            job_queue.shutdown(wait=False)


def create_app(app_settings: Settings | None = None, registry: PluginRegistry | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        app_settings: Defaults to cms_core.config.settings.
        registry:     Pre-built registry; built from settings at startup when omitted.
    """
    app_settings = app_settings or settings
    app = FastAPI(
        title=app_settings.app_name,
        description="Plugin runtime for the CMS",
        debug=app_settings.debug,
        version=app_settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.admin_token = app_settings.admin_token
    app.state.plugin_registry = registry

    register_exception_handlers(app)
    app.include_router(
        plugins.router,
        prefix="/api/v1/plugins",
        dependencies=[Depends(require_admin)],
    )

    @app.get("/", tags=["Root"])
    async def root():
        return {"message": "Welcome to the CMS API"}

    if app_settings.debug:
        logger.info("Running in %s mode", app_settings.environment)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app
