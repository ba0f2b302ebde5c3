"""JSON-RPC method dispatcher.

Single entry point for an incoming call. eth_signTransaction is handled
locally against the key addressed by the request path; signer_version is
answered without touching the backend; every other method is forwarded
verbatim to the upstream node.

handle_body() is total: malformed bodies, bad params, backend and network
failures all come back as JSON-RPC error replies that echo the request id.
"""

import asyncio
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from signerproxy import __version__
from signerproxy.contracts.jsonrpc import (
    JsonRpcReply,
    JsonRpcRequest,
    RawReply,
    RequestId,
    parse_json,
)
from signerproxy.errors import (
    GatewayError,
    InternalError,
    InvalidParams,
    InvalidRequest,
    ParseError,
    RequestTimeout,
)
from signerproxy.services.transaction_encoder import TransactionEncoder
from signerproxy.services.upstream import UpstreamProxy
from signerproxy.signing.cache import SignerCache

logger = logging.getLogger(__name__)

SIGN_TRANSACTION = "eth_signTransaction"
SIGNER_VERSION = "signer_version"

LOCAL_METHODS = frozenset({SIGN_TRANSACTION, SIGNER_VERSION})

Reply = Union[JsonRpcReply, RawReply]


def _request_id(payload: Any) -> RequestId:
    """Best-effort id of a request that failed validation."""
    if isinstance(payload, dict):
        request_id = payload.get("id")
        if isinstance(request_id, (int, str)) and not isinstance(request_id, bool):
            return request_id
    return None


class Dispatcher:
    """Routes JSON-RPC calls to local signing or the upstream node."""

    def __init__(
        self,
        cache: SignerCache,
        encoder: TransactionEncoder,
        upstream: UpstreamProxy,
        request_timeout: Optional[float] = 30.0,
    ):
        self.cache = cache
        self.encoder = encoder
        self.upstream = upstream
        self.request_timeout = request_timeout or None

    async def handle_body(self, body: bytes, key_id: Optional[str] = None) -> Reply:
        """Parse a raw HTTP body and handle it."""
        try:
            payload = parse_json(body)
        except ValueError:
            return JsonRpcReply.failure(None, ParseError("parse error"))

        if isinstance(payload, list):
            return JsonRpcReply.failure(None, InvalidRequest("batch requests are not supported"))
        if not isinstance(payload, dict):
            return JsonRpcReply.failure(None, InvalidRequest("request must be a JSON object"))

        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            return JsonRpcReply.failure(
                _request_id(payload),
                InvalidRequest(f"invalid request: {fields or 'malformed'}"),
            )

        return await self.handle(request, key_id, body)

    async def handle(
        self,
        request: JsonRpcRequest,
        key_id: Optional[str] = None,
        body: Optional[bytes] = None,
    ) -> Reply:
        """Handle one parsed call; never raises."""
        if request.method not in LOCAL_METHODS:
            return await self.upstream.forward(request, body)

        if request.method == SIGNER_VERSION:
            return JsonRpcReply.success(request, f"signer-proxy/{__version__}")

        try:
            result = await asyncio.wait_for(
                self._sign_transaction(request, key_id),
                timeout=self.request_timeout,
            )
            return JsonRpcReply.success(request, result)

        except asyncio.TimeoutError:
            logger.warning(f"{request.method} (id {request.id!r}) timed out after {self.request_timeout}s")
            error: GatewayError = RequestTimeout(f"request timed out after {self.request_timeout}s")
        except GatewayError as e:
            logger.warning(f"{request.method} (id {request.id!r}) failed: {e.__class__.__name__}: {e.message}")
            error = e
        except Exception:
            logger.exception(f"Unexpected error handling {request.method} (id {request.id!r})")
            error = InternalError("internal error")

        return JsonRpcReply.failure(request.id, error, request.jsonrpc)

    async def _sign_transaction(self, request: JsonRpcRequest, raw_key_id: Optional[str]) -> str:
        if raw_key_id is None:
            raise InvalidParams(f"{SIGN_TRANSACTION} requires a key id in the request path")
        key_id = self.cache.provider.parse_key_id(raw_key_id)

        tx = self.encoder.parse(request.params)
        signer = await self.cache.get_or_create(key_id)
        tx = await self.encoder.apply_defaults(tx, signer)
        envelope = await self.encoder.sign(tx, signer)
        return self.encoder.encode(envelope)
