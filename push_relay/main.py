"""
Push Relay — FastAPI Entry Point

Initializes the FastAPI app, builds the application context at startup,
starts the conversation change watcher when that trigger is enabled, and
registers the notification routes.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from push_relay.api.notifications import router as notifications_router
from push_relay.core.config import PROJECT_NAME, SERVICE_NAME, load_settings, validate_settings
from push_relay.core.context import AppContext, build_context
from push_relay.models.notifications import HealthResponse

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def format_validation_errors(errors) -> str:
    """Render pydantic errors as 'field: message; field: message'."""
    parts = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        parts.append(f"{field}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request body"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the context (unless one was injected) and run the watcher."""
    if getattr(app.state, "context", None) is None:
        settings = validate_settings(load_settings())
        configure_logging(settings.log_level)
        app.state.context = build_context(settings)

    context: AppContext = app.state.context
    watcher_task: Optional[asyncio.Task] = None
    if context.watcher is not None:
        watcher_task = asyncio.create_task(context.watcher.run())
        logger.info("Conversation change watcher started")

    try:
        yield
    finally:
        if watcher_task is not None:
            context.watcher.stop()
            watcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher_task
            await context.watcher.drain()
        if context.delivery_logger is not None:
            await context.delivery_logger.drain()


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        context: Pre-built context (tests). When omitted, the context is
            built from the environment during startup.
    """
    settings = context.settings if context is not None else load_settings()

    app = FastAPI(
        title=f"{PROJECT_NAME} API",
        description="Chat message push notification relay (FCM)",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
        # Clients read {success, error}, not FastAPI's {detail}.
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed trigger bodies are invalid requests (400), like missing fields."""
        message = format_validation_errors(exc.errors())
        logger.warning("Request validation failed: path=%s, errors=%s", request.url.path, message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": message},
        )

    # --- Register API routers ---
    app.include_router(notifications_router)

    @app.get("/")
    async def root(request: Request):
        """Service banner listing the available endpoints."""
        ctx: Optional[AppContext] = request.app.state.context
        return {
            "status": "running",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": ctx.settings.dispatch_mode if ctx else "starting",
            "endpoints": [
                "POST /send",
                "POST /send-notification",
                "POST /send-to-user",
                "GET /health",
            ],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint. Always succeeds."""
        ctx: Optional[AppContext] = request.app.state.context
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            uptime=round(ctx.uptime(), 3) if ctx else 0.0,
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run("push_relay.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
