"""Main FastAPI application entry point."""
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_tracker.api.routes import router
from task_tracker.config import MEMORY_BACKEND, Settings, load_settings
from task_tracker.services.memory_store import MemoryStore
from task_tracker.services.sql_store import SqlStore
from task_tracker.services.store import Store

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_store(settings: Settings) -> Store:
    """Create the store selected by the settings."""
    if settings.store_backend == MEMORY_BACKEND:
        logger.info("Using in-memory store")
        return MemoryStore.with_seed_data()

    logger.info("Using SQL store")
    return SqlStore.connect(
        settings.database_url,
        operation_timeout=settings.db_operation_timeout,
        ping_retries=settings.db_ping_retries,
    )


def create_app(store: Optional[Store] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application around a store.

    Without an explicit store one is built from the settings (read from
    the environment when not given) and closed on shutdown.
    """
    owns_store = store is None
    if store is None:
        store = build_store(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_store:
            logger.info("Closing store")
            app.state.store.close()

    app = FastAPI(
        title="Task Tracker",
        description="Users and tasks with a field-level audit history of every task change.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Actor"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        logger.info(
            "request method=%s path=%s status=%d duration=%.3fs",
            request.method,
            request.url.path,
            response.status_code,
            time.time() - start_time,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else first.get("msg")
        else:
            message = "invalid request"
        logger.warning("Validation error on %s: %s", request.url.path, message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s %s: %s", request.method, request.url.path, exc,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "internal server error"})

    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    app = create_app(settings=settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
