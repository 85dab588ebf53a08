"""FastAPI application factory.

Wiring (outermost first):
1. CORS -- ALLOWED_ORIGINS
2. Error envelope -- PipelineError and request-validation handlers
3. Routes -- hub webhook (/api/facturas) and invoice management (/api/invoices)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sigo_bridge import __version__
from sigo_bridge.config import Settings, settings as default_settings
from sigo_bridge.errors import FieldError, PipelineError, error_body
from sigo_bridge.invoices.client import SigoClient
from sigo_bridge.invoices.routes import router as invoices_router
from sigo_bridge.notifications import NotificationDispatcher
from sigo_bridge.webhooks.handlers import InvoicePipeline, register_webhook_routes

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_sigo_bridge", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._sigo_bridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return JSONResponse(error_body(exc), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            FieldError(".".join(str(p) for p in err.get("loc", ())), err.get("msg", "invalid value")).to_dict()
            for err in exc.errors()
        ]
        return JSONResponse({"status": "error", "message": "invalid data", "errors": errors}, status_code=400)


def create_app(
    settings: Settings | None = None,
    sigo_client: SigoClient | None = None,
    notifier: NotificationDispatcher | None = None,
) -> FastAPI:
    """Build the app. Clients may be injected (tests); otherwise they are built from settings."""
    settings = settings or default_settings
    sigo_client = sigo_client or SigoClient(settings)
    notifier = notifier or NotificationDispatcher(
        settings.hub_notification_url,
        settings.hub_webhook_secret,
        timeout=settings.hub_notification_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("sigo-bridge %s starting (Siigo at %s)", __version__, settings.sigo_api_url)
        if not settings.hub_webhook_secret:
            logger.warning("HUB_WEBHOOK_SECRET not set, every webhook will be rejected")
        yield
        await notifier.aclose()
        await sigo_client.aclose()
        logger.info("sigo-bridge stopped")

    app = FastAPI(title="sigo-bridge", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.sigo_client = sigo_client
    app.state.notifier = notifier
    app.state.pipeline = InvoicePipeline(settings, sigo_client, notifier)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    register_webhook_routes(app)
    app.include_router(invoices_router)
    return app
