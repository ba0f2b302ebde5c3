"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from signerproxy import __version__
from signerproxy.config import Settings, get_settings
from signerproxy.services import (
    Dispatcher,
    NodeDefaults,
    StaticDefaults,
    TransactionEncoder,
    UpstreamProxy,
)
from signerproxy.signing import SignerCache, SignerProvider, create_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        f"Serving {app.state.provider.signer_type.value} signer "
        f"(cache mode {app.state.cache.mode}), forwarding to upstream node"
    )
    yield
    # Shutdown
    await app.state.http_client.aclose()
    await app.state.provider.close()


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[SignerProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration (defaults to the environment)
        provider: Signer provider (defaults to the configured backend)
        http_client: Client used for upstream calls

    Raises:
        ConfigError: If the configuration cannot be served
    """
    settings = settings or get_settings()
    if provider is None:
        provider = create_provider(settings)

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.upstream_timeout_secs)

    upstream = UpstreamProxy(settings.rpc_url, http_client, timeout=settings.upstream_timeout_secs)
    if settings.fill_defaults_from_node:
        defaults = NodeDefaults(upstream)
    else:
        defaults = StaticDefaults(settings.chain_id)

    cache = SignerCache(provider, settings.signer_cache_mode)
    dispatcher = Dispatcher(
        cache,
        TransactionEncoder(defaults),
        upstream,
        request_timeout=settings.request_timeout_secs,
    )

    app = FastAPI(
        title="Signer Proxy",
        description="JSON-RPC signing gateway for keys held in an HSM or KMS",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.state.cache = cache
    app.state.dispatcher = dispatcher
    app.state.http_client = http_client

    # Register routes
    from signerproxy.api.routes import health, keys

    app.include_router(health.router, tags=["Health"])
    app.include_router(keys.router, tags=["Keys"])

    return app


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_cache(request: Request) -> SignerCache:
    return request.app.state.cache
