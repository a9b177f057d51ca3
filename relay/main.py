from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.api.routes import NAME, VERSION, router
from relay.config import Settings
from relay.errors import RelayError
from relay.services import RelayServices, build_services

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": code})


async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return _error(exc.status_code, exc.code)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    codes = {404: "not-found", 405: "method-not-allowed"}
    return _error(exc.status_code, codes.get(exc.status_code, f"http-{exc.status_code}"))


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("%s %s invalid request: %s", request.method, request.url.path, exc.errors())
    return _error(400, "invalid-request")


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal-error")


def create_app(*, settings: Settings | None = None, services: RelayServices | None = None) -> FastAPI:
    """Build the relay app. State is created in the lifespan unless `services` is given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = services or build_services(settings or Settings.from_env())
        app.state.services = svc
        cfg = svc.settings
        logger.info("%s listening on :%d, documents under %s", NAME, cfg.port, cfg.store_dir)
        if cfg.allowed_world_ids:
            logger.info("World allow-list: %s", ", ".join(sorted(cfg.allowed_world_ids)))
        if cfg.write_token:
            logger.info("JSON write token enabled")
        try:
            yield
        finally:
            logger.info("Flushing documents before shutdown")
            await svc.aclose()

    app = FastAPI(title=NAME, version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RelayError, _relay_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("relay.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
