from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import files_router, router
from .config import ensure_work_dirs, get_settings
from .errors import ApiError, bad_request, internal_error
from .services.cleanup import cleanup_on_startup
from .services.render import shutdown_orchestrator


def _error(exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="karaoke render api", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.web_cors_allowed_origins),
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(_: Request, exc: ApiError) -> JSONResponse:
        return _error(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = exc.errors()
        message = details[0].get("msg", "request validation failed") if details else "request validation failed"
        return _error(bad_request(message))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logging.exception("[karaoke_api] unhandled exception")
        return _error(internal_error())

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router, prefix="/api")
    app.include_router(files_router, prefix=settings.output_url_prefix)

    @app.on_event("startup")
    def startup_event() -> None:
        ensure_work_dirs()
        try:
            cleanup_on_startup()
        except Exception:
            logging.exception("[karaoke_api] startup cleanup failed")

    @app.on_event("shutdown")
    def shutdown_event() -> None:
        shutdown_orchestrator()

    return app


app = create_app()
