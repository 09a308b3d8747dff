"""FastAPI application entrypoint."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1 import v1_router
from app.core.config import get_settings
from app.core.database import async_session_factory, init_db
from app.core.errors import SourcebotError
from app.core.logging import configure_logging
from app.services.container import build_services

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: logging + tables + vector collection
    configure_logging(_settings.log_level)
    await init_db()
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(_settings, async_session_factory)
        app.state.services = services
    await services.vector_store.ensure_collection()
    yield
    await services.aclose()


app = FastAPI(
    title=_settings.app_name,
    version="0.1.0",
    description="Source ingestion and retrieval-augmented chat for bots",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Domain errors ────────────────────────────────────────────
@app.exception_handler(SourcebotError)
async def sourcebot_error_handler(_request: Request, exc: SourcebotError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
