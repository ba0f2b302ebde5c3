"""JSON-RPC and address endpoints, addressed per key."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from signerproxy.api.app import get_cache, get_dispatcher
from signerproxy.contracts.jsonrpc import AddressResponse, RawReply
from signerproxy.errors import BackendConnectError, InvalidParams, KeyNotFoundError
from signerproxy.services.dispatcher import Dispatcher, Reply
from signerproxy.signing.cache import SignerCache

logger = logging.getLogger(__name__)

router = APIRouter()


def render_reply(reply: Reply) -> Response:
    """Relay upstream bytes verbatim, serialize local replies."""
    if isinstance(reply, RawReply):
        return Response(content=reply.body, status_code=reply.status_code, media_type=reply.media_type)
    return JSONResponse(reply.to_dict())


@router.post("/")
async def handle_request(request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """JSON-RPC without a key: forwarded methods only."""
    body = await request.body()
    return render_reply(await dispatcher.handle_body(body))


@router.get("/key/{key_id:path}/address", response_model=AddressResponse)
async def get_key_address(key_id: str, cache: SignerCache = Depends(get_cache)):
    """Return the account address controlled by a key."""
    try:
        parsed = cache.provider.parse_key_id(key_id)
    except InvalidParams as e:
        raise HTTPException(status_code=400, detail=e.message)

    try:
        signer = await cache.get_or_create(parsed)
    except KeyNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BackendConnectError as e:
        logger.warning(f"Address lookup failed for key {key_id}: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)

    return AddressResponse(address=signer.address)


@router.post("/key/{key_id:path}")
async def handle_key_request(
    key_id: str,
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """JSON-RPC addressed to one key."""
    body = await request.body()
    return render_reply(await dispatcher.handle_body(body, key_id))
