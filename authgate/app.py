from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("authgate_started", version=__version__, test_mode=runtime.settings.test_mode)
    yield
    logger.info("authgate_stopped")


app = FastAPI(title="AuthGate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return [o.strip() for o in _settings.cors_allow_origins.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the client's X-Request-ID (or a fresh one) to every log line of the request."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Liveness plus a bounded probe of the credential store."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.get_identity, "healthz-probe"),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        checks["store"] = {"status": "ok"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        checks["store"] = {"status": "timeout"}
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = {"status": "error"}
    healthy = all(c["status"] == "ok" for c in checks.values())
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
