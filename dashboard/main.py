"""
Main API entrypoint.
"""

import traceback
from http import HTTPStatus
from loguru import logger
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, APIRouter, HTTPException, status, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from prometheus_client import (
    generate_latest,
    CollectorRegistry,
    multiprocess,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)
from dashboard.overview.router import router as overview_router
from dashboard.leaderboard.router import router as leaderboard_router
from dashboard.environment.router import router as environment_router
from dashboard.miner.router import router as miner_router
from dashboard.rollout.router import router as rollout_router
from dashboard.misc.router import router as misc_router
from dashboard.database import engine, get_session, pool_status
from dashboard.config import settings
from dashboard.util import now_str


@asynccontextmanager
async def lifespan(_: FastAPI):
    """
    Nothing to set up (the pool connects lazily), tear down the pool and redis on exit.
    """
    logger.info(f"Dashboard API starting, overview window {settings.overview_window}")
    yield
    await engine.dispose()
    if settings._redis_client is not None:
        await settings._redis_client.aclose()
    logger.info("Dashboard API stopped, connection pools closed")


app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)

default_router = APIRouter()
default_router.include_router(overview_router, tags=["Overview"])
default_router.include_router(leaderboard_router, tags=["Leaderboard"])
default_router.include_router(environment_router, tags=["Environments"])
default_router.include_router(miner_router, tags=["Miners"])
default_router.include_router(rollout_router, tags=["Rollouts"])
default_router.include_router(misc_router, tags=["Miscellaneous"])


async def ping():
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connectivity problems: {str(e)}",
        )
    return {"message": "pong", "pool": pool_status()}


# Prometheus metrics endpoint.
async def get_latest_metrics(request: Request):
    if request.headers.get("x-forwarded-for"):
        raise HTTPException(status_code=403, detail="Forbidden")
    registry = REGISTRY
    if settings.prometheus_multiproc_dir:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
    data = generate_latest(registry)
    return Response(data, media_type=CONTENT_TYPE_LATEST)


default_router.get("/ping")(ping)
default_router.get("/_metrics")(get_latest_metrics)

app.include_router(default_router)


def error_response(status_code: int, message: str, headers: dict = None, **extra):
    """
    Uniform error body: {error, message, timestamp}.
    """
    body = {
        "error": HTTPStatus(status_code).phrase,
        "message": message,
        "timestamp": now_str(),
        **extra,
    }
    return ORJSONResponse(body, status_code=status_code, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    extra = {}
    cause = getattr(exc, "cause", None)
    if settings.debug and cause is not None:
        extra["detail"] = str(cause)
        extra["trace"] = "".join(traceback.format_exception(cause))
    return error_response(
        exc.status_code,
        str(exc.detail),
        headers=getattr(exc, "headers", None),
        **extra,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    logger.warning(f"Rejected invalid request to {request.url.path}: {problems}")
    return error_response(status.HTTP_400_BAD_REQUEST, f"Invalid request: {problems}")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error serving {request.method} {request.url.path}: {exc}")
    extra = {}
    if settings.debug:
        extra["detail"] = str(exc)
        extra["trace"] = "".join(traceback.format_exception(exc))
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", **extra
    )
