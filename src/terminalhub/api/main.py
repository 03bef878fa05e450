"""FastAPI main application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from terminalhub import __version__
from terminalhub.api.routers import sessions, terminal
from terminalhub.bootstrap import bootstrap
from terminalhub.config import settings
from terminalhub.runtime.session_registry import get_session_registry

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings.setup_logging()
    logger.info(
        "terminalhub_startup",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        root=str(settings.terminalhub_root),
        sandbox_enabled=settings.sandbox_enabled,
    )
    await bootstrap()
    yield
    # Shutdown
    await get_session_registry().shutdown()
    logger.info("terminalhub_shutdown")


app = FastAPI(
    title="TerminalHub",
    description="Sandboxed browser terminal sessions",
    version=__version__,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return concise request validation details."""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation failed",
            "errors": [
                {
                    "field": " -> ".join(str(part) for part in err.get("loc", [])),
                    "type": err.get("type", "unknown"),
                    "msg": err.get("msg", "validation error"),
                }
                for err in exc.errors()
            ],
        },
    )


# Routers
app.include_router(terminal.router)
app.include_router(sessions.router, prefix="/api/v1")


@app.get("/health")
async def health():
    """Health check endpoint."""
    registry = get_session_registry()
    return {
        "status": "ok",
        "root": str(settings.terminalhub_root),
        "sandbox_enabled": registry.sandbox_enabled,
        "sessions": len(registry),
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "TerminalHub",
        "version": __version__,
        "description": "Sandboxed browser terminal sessions",
    }
