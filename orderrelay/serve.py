"""Application factory and process entry point.

Middleware ordering (outermost first):
1. CORS: handles OPTIONS preflight before anything else
2. Rate limiting: rejects floods before any work is done
3. Auth: verifies the dashboard bearer token and sets the tenant
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from orderrelay import __version__
from orderrelay.api import relay_error_handler, router, unhandled_error_handler
from orderrelay.auth import AuthMiddleware
from orderrelay.config import Settings, settings as default_settings
from orderrelay.exceptions import RelayError
from orderrelay.locks import DispatchLock, OrderMutex, build_dispatch_lock
from orderrelay.orchestrator import Orchestrator
from orderrelay.registry import ClientFactory, IntegrationRegistry
from orderrelay.storage import Storage, build_storage
from orderrelay.webhook_log import WebhookLogStore

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Relay:
    """Everything a request handler needs, hung off ``app.state.relay``."""

    settings: Settings
    storage: Storage
    registry: IntegrationRegistry
    webhook_log: WebhookLogStore
    orchestrator: Orchestrator

    def close(self) -> None:
        self.registry.close()


def build_relay(
    settings: Settings,
    *,
    storage: Storage | None = None,
    client_factory: ClientFactory | None = None,
    dispatch_lock: DispatchLock | None = None,
) -> Relay:
    storage = storage or build_storage(settings)
    registry = IntegrationRegistry(
        storage.integrations,
        cache_ttl=settings.registry_cache_ttl_seconds,
        client_factory=client_factory,
        client_options={
            "timeout": settings.provider_timeout_seconds,
            "max_attempts": settings.provider_max_attempts,
            "base_delay": settings.provider_base_delay,
            "max_delay": settings.provider_max_delay,
            "jitter": settings.provider_jitter,
        },
    )
    webhook_log = WebhookLogStore(storage.webhook_logs)
    if dispatch_lock is None:
        dispatch_lock = build_dispatch_lock(
            settings.lock_backend, settings.redis_url, settings.effective_dispatch_lock_ttl
        )
    orchestrator = Orchestrator(
        storage,
        registry,
        webhook_log,
        dispatch_lock=dispatch_lock,
        mutex=OrderMutex(),
    )
    return Relay(settings, storage, registry, webhook_log, orchestrator)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"message": "Rate limit exceeded"},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def create_app(settings: Settings | None = None, relay: Relay | None = None) -> FastAPI:
    settings = settings or default_settings
    relay = relay or build_relay(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Order relay %s starting (storage=%s, locks=%s)",
            __version__,
            settings.storage_backend,
            settings.lock_backend,
        )
        yield
        relay.close()
        logger.info("Order relay stopped")

    app = FastAPI(title="Order Relay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.relay = relay

    app.include_router(router)
    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Added innermost first
    app.add_middleware(AuthMiddleware)

    app.state.limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


def main() -> None:
    import uvicorn

    configure_logging(default_settings.log_level)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
