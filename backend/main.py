import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import exercises, progress
from core.config import settings
from core.database import AsyncSessionLocal, create_tables, engine
from core.errors import AppErrorException, register_error_handlers
from core.logging import configure_logging, get_logger
from core.middleware import RequestLoggingMiddleware
from engines.cache import create_cache_provider, run_periodic_cleanup
from engines.generation import OpenAIExerciseGenerator
from engines.progress import LocalProgressStore, RemoteProgressStore, UserProgressLedger
from engines.selector import ExerciseSelector
from engines.worksheets import StaticWorksheetRepository

# Initialize logging before anything else
configure_logging(
    level=settings.LOG_LEVEL,
    json_logs=settings.LOG_JSON,
    log_sql=settings.LOG_SQL,
)

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = settings.storage_config()
    app.state.storage = storage
    log.info("startup", message="Vjezbajmo API starting up", storage=storage.value)

    # Database initialization; the ledger falls back to device storage without it
    try:
        await create_tables()
        log.info("database_connected", message="Database tables initialized")
    except Exception as e:
        log.warning("database_unavailable", error=str(e), message="App starting without database")

    loaded = StaticWorksheetRepository.from_directory(settings.WORKSHEETS_DIR)
    if loaded.is_err():
        raise AppErrorException(loaded.unwrap_err())

    cache = create_cache_provider(storage, settings)
    ledger = UserProgressLedger(
        LocalProgressStore(settings.LOCAL_PROGRESS_DIR, retention_days=settings.PROGRESS_RETENTION_DAYS),
        RemoteProgressStore(AsyncSessionLocal, retention_days=settings.PROGRESS_RETENTION_DAYS),
    )
    selector = ExerciseSelector(
        loaded.unwrap(),
        cache,
        ledger,
        OpenAIExerciseGenerator(),
        generation_timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
        invalidation_policy=settings.CACHE_INVALIDATION_POLICY,
    )
    app.state.selector = selector

    cleanup = asyncio.create_task(
        run_periodic_cleanup(cache, settings.CACHE_CLEANUP_INTERVAL_SECONDS),
        name="cache-cleanup",
    )

    yield

    # Shutdown
    log.info("shutdown", message="Vjezbajmo API shutting down")
    cleanup.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup
    await selector.wait_for_write_backs()
    await cache.close()
    await engine.dispose()
    log.debug("database_disposed", message="Database connections closed")


app = FastAPI(
    title="Vjezbajmo API",
    description="Croatian grammar practice: static worksheets, pooled and generated exercises, and progress tracking",
    version="0.1.0",
    lifespan=lifespan,
)

# Register structured error handlers
register_error_handlers(app)

# Middleware (order matters: last added = first executed)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers

app.include_router(exercises.router, prefix="/api/exercises", tags=["exercises"])
app.include_router(progress.router, prefix="/api/progress", tags=["progress"])


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": "0.1.0",
        "storage": app.state.storage.value if hasattr(app.state, "storage") else None,
        "cache": app.state.selector.cache.backend if hasattr(app.state, "selector") else None,
    }


if __name__ == "__main__":
    import uvicorn

    log.info("server_config", host=settings.BACKEND_HOST, port=settings.BACKEND_PORT, debug=settings.APP_DEBUG)
    uvicorn.run(
        "main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        reload=settings.APP_DEBUG,
        log_config=None,  # Disable uvicorn's default logging, we handle it
    )
