import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from viewsync.config import settings
from viewsync.database import source_registry
from viewsync.pg_database import AsyncSessionLocal, engine, init_pg
from viewsync.routers.databases import router as databases_router
from viewsync.routers.etl import router as etl_router
from viewsync.routers.views import router as views_router
from viewsync.services.multi_view import scheduled_sync_all
from viewsync.services.sql_renderer import SqlRenderer
from viewsync.services.sync_service import ViewSyncService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_sync_service() -> ViewSyncService:
    return ViewSyncService(
        AsyncSessionLocal,
        engine,
        source_registry,
        allowed_views=settings.allowed_views,
        renderer=SqlRenderer(engine.dialect.name, settings.etl_schema_name),
        default_schema=settings.default_source_schema,
        batch_size=settings.sync_batch_size,
        stale_after=timedelta(minutes=settings.stale_sync_minutes),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_pg()
    source_registry.register_from_env(settings.source_databases)
    if not settings.allowed_views:
        logger.warning("ALLOWED_VIEWS is empty; every sync request will be rejected")

    service = build_sync_service()
    app.state.sync_service = service
    # Syncs that were running when the process died would otherwise hold their view forever
    recovered = await service.guard.recover_stale()
    if recovered:
        logger.info("Reset %d interrupted sync(s) left over from a previous run", recovered)

    scheduler = None
    if settings.scheduled_sync_enabled:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            scheduled_sync_all,
            "cron",
            hour=settings.scheduled_sync_hour,
            minute=settings.scheduled_sync_minute,
            args=[service],
        )
        scheduler.start()
        logger.info(
            "ETL scheduler started, full sync daily at %02d:%02d",
            settings.scheduled_sync_hour, settings.scheduled_sync_minute,
        )

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await engine.dispose()


app = FastAPI(title="View Sync API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(etl_router, prefix="/api")
app.include_router(databases_router, prefix="/api")
app.include_router(views_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
