import asyncio
import time
import uuid

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, configure_logging, get_logger
from app.db.init import init_db
from app.routers import accounts, admin, credits, operations
from app.services import pricing as pricing_service

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Credit Meter API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(accounts.router, prefix="/v1/accounts", tags=["accounts"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(operations.router, prefix="/v1/operations", tags=["operations"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


def _log_listener_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("pricing_invalidation_listener_stopped", error=str(exc))


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    log.info("startup", msg="DB connected")
    app.state.redis = None
    app.state.pricing_listener = None
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis.ping()
    except Exception as e:
        # pricing still invalidates locally and expires by TTL
        log.warning("startup", msg="Redis unavailable, pricing invalidation is local only", error=str(e))
        await redis.aclose()
        return
    app.state.redis = redis
    app.state.pricing_listener = asyncio.create_task(pricing_service.listen_for_invalidations(redis))
    app.state.pricing_listener.add_done_callback(_log_listener_exit)
    log.info("startup", msg="Redis connected")


@app.on_event("shutdown")
async def shutdown():
    listener = getattr(app.state, "pricing_listener", None)
    if listener is not None:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.warning("shutdown", msg="Pricing listener failed", error=str(e))
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
