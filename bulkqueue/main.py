import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from bulkqueue.config import get_settings
from bulkqueue.database import init_db
from bulkqueue.middleware.correlation import CorrelationMiddleware, CorrelationIdFilter
from bulkqueue.routes import jobs
from bulkqueue.services.producers import register_http_producers
from bulkqueue.services.resume_manager import ResumeManager
from bulkqueue.services.scheduler import get_scheduler
from bulkqueue.utils.logger import logger
from bulkqueue.utils.metrics import get_snapshot
from bulkqueue.worker import run_cleanup

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = jobs.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS - Explicit origins from config
allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)
logger.addFilter(CorrelationIdFilter())


@app.on_event("startup")
async def startup_event():
    logger.info("Starting BulkQueue...")
    await init_db()

    scheduler = get_scheduler()
    if settings.producer_base_url:
        registered = register_http_producers(
            scheduler.registry, settings.producer_base_url, settings.producer_timeout_seconds
        )
        logger.info("producers.registered", extra={"count": len(registered)})
    else:
        logger.warning("producers.not_configured")

    # Once per process: pick up jobs interrupted by the previous shutdown
    app.state.resume_manager = ResumeManager(scheduler)
    await app.state.resume_manager.bootstrap()

    app.state.cleanup_task = asyncio.create_task(
        run_cleanup(settings.cleanup_interval_minutes * 60, settings.job_retention_hours)
    )
    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    cleanup_task = getattr(app.state, "cleanup_task", None)
    if cleanup_task is not None:
        cleanup_task.cancel()
    # Interrupted jobs stay running and are resumed on the next start
    await get_scheduler().shutdown()
    logger.info("BulkQueue stopped")


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    return get_snapshot()


app.include_router(jobs.router, prefix="/api/jobs", tags=["Bulk Jobs"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bulkqueue.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
