from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .config import Settings, get_settings, missing_required_settings
from .errors import ChatError
from .services import ChatServices, build_services

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, services: ChatServices | None = None) -> FastAPI:
    settings = settings or (services.settings if services is not None else get_settings())
    missing = missing_required_settings(settings)
    if missing:
        raise RuntimeError(
            "quote chat startup blocked, missing configuration: "
            + ", ".join(missing)
            + ". Set the Twilio Conversations credentials and a session secret before starting the service."
        )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.chat_services = services or build_services(settings)

    origin = settings.cors_allowed_origin.rstrip("/")
    if "://" in origin:
        origin = "/".join(origin.split("/")[:3])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    app.include_router(router, prefix=settings.api_prefix)
    return app
