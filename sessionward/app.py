from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import router
from sessionward.config import get_settings
from sessionward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the credential store on startup and release it on shutdown."""
    from sessionward.service.runtime import get_runtime, shutdown_runtime

    get_runtime()
    logger.info("startup_complete")

    yield

    shutdown_runtime()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="sessionward", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID.

    Taken from the client's X-Request-ID header when present, otherwise
    generated. It is bound into every log entry for the request and echoed
    back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Responses carry tokens; proxies must not cache them
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
