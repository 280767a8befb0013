from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tokengate.api.error_handling import register_exception_handlers
from tokengate.api.routes import router
from tokengate.api.schemas import Envelope, HealthResponse
from tokengate.config import Settings
from tokengate.logging import get_logger, set_correlation_id
from tokengate.service import runtime as runtime_module
from tokengate.service.filter import RequestAuthenticationFilter

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = runtime_module.get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokengate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


# innermost middleware; it must run after add_correlation_id
app.add_middleware(
    RequestAuthenticationFilter,
    runtime_provider=lambda: runtime_module.get_runtime(),
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/api/"):
        # bearer tokens must not land in shared caches
        response.headers.setdefault("Cache-Control", "no-store")
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh UUID) to the logging context and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope, tags=["health"])
async def health():
    """Report whether the backing store answers within a short timeout."""
    runtime = runtime_module.get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    healthy = False
    try:
        healthy = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout",
            component=store_type,
            timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        logger.error("health_check_failed", component=store_type, error=str(exc))
    envelope = Envelope(
        success=healthy,
        data=HealthResponse(
            status="healthy" if healthy else "unhealthy", store=store_type
        ),
    )
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=jsonable_encoder(envelope.model_dump()),
    )
