from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stepchain.api.error_handling import register_exception_handlers
from stepchain.api.routes import router
from stepchain.config import Settings
from stepchain.logging import get_logger, set_request_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release upstream connections on shutdown."""
    from stepchain.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="stepchain", version=__version__, lifespan=lifespan)


def _allowed_origins() -> list[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-User-Id",
        "X-Username",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def bind_request_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated if absent)."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from stepchain.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = type(runtime.store).__name__
    checks: Dict[str, Any] = {"store": {"type": store_type, "status": "ok"}}
    verify = getattr(runtime.store, "verify_connection", None)
    if verify is not None:
        try:
            verify()
        except Exception as exc:
            logger.warning("health_store_check_failed", error=str(exc))
            checks["store"]["status"] = "unavailable"
    healthy = all(check["status"] == "ok" for check in checks.values())
    return {"status": "healthy" if healthy else "degraded", "version": __version__, "checks": checks}
