import logging
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .api import internal_error_response, router as playground_router
from .config import Settings, get_settings
from .engine import ExecutionEngine, TraceStore
from .executors import build_default_executors
from .ledger import HttpLedgerClient, LedgerClient
from .logging_setup import close_logging, setup_logging
from .node_registry import build_default_registry
from .reasoning import build_reasoning_provider

logger = logging.getLogger(__name__)


def build_engine(settings: Optional[Settings] = None, ledger: Optional[LedgerClient] = None) -> ExecutionEngine:
    """Wire registry, executors and collaborators into an engine."""
    settings = settings or get_settings()
    registry = build_default_registry()
    executors = build_default_executors(registry, build_reasoning_provider(settings))
    if ledger is None and settings.LEDGER_GATEWAY_URL:
        ledger = HttpLedgerClient(
            settings.LEDGER_GATEWAY_URL,
            request_timeout=settings.LEDGER_REQUEST_TIMEOUT_SECONDS,
            poll_interval=settings.LEDGER_POLL_INTERVAL_SECONDS,
        )
    return ExecutionEngine(registry, executors, settings=settings, ledger=ledger)


def create_app(engine: Optional[ExecutionEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (engine.settings if engine is not None else get_settings())

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.5,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("playground service started (nodes=%d)", len(app.state.engine.registry))
        yield
        if app.state.engine.ledger is not None:
            await app.state.engine.ledger.aclose()
        logger.info("playground service shutdown")
        close_logging()

    app = FastAPI(title="Plan Execution Playground", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine or build_engine(settings)
    app.state.trace_store = TraceStore(retention_seconds=settings.TRACE_RETENTION_SECONDS)

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.RATE_LIMIT])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s: %s", request.url.path, exc)
        return internal_error_response()

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(playground_router, prefix="/api/playground", tags=["playground"])
    return app


def main():
    settings = get_settings()
    setup_logging()
    import uvicorn
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
