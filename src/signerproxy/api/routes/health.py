"""Health check endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from signerproxy import __version__

router = APIRouter()


@router.get("/ping", response_class=PlainTextResponse)
async def ping():
    """Liveness probe, independent of backend state."""
    return "pong"


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "signer-proxy"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration info."""
    state = request.app.state
    return {
        "status": "healthy",
        "service": "signer-proxy",
        "version": __version__,
        "signer": {
            "type": state.provider.signer_type.value,
            "cache_mode": state.cache.mode,
            "cached_keys": len(state.cache),
        },
        "config": state.settings.get_safe_dict(),
    }
