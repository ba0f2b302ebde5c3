"""Upstream node proxy.

Forwards every JSON-RPC call the gateway does not implement to the
configured node and relays the node's reply bytes unchanged. Transport
failures become JSON-RPC error replies that echo the caller's id.
"""

import itertools
import json
import logging
from typing import Any, Optional, Union

import httpx

from signerproxy.contracts.jsonrpc import (
    MAX_REPLY_DEPTH,
    JsonRpcReply,
    JsonRpcRequest,
    RawReply,
    parse_json,
)
from signerproxy.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class UpstreamProxy:
    """Client for the upstream JSON-RPC node.

    Holds no per-request state, so forwarded calls run fully concurrently
    with each other and with signing traffic.
    """

    def __init__(self, rpc_url: str, client: httpx.AsyncClient, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    async def forward(
        self,
        request: JsonRpcRequest,
        body: Optional[bytes] = None,
    ) -> Union[RawReply, JsonRpcReply]:
        """Forward a call verbatim and relay the reply.

        Args:
            request: Parsed request, used for the id on failure
            body: Original request bytes; re-serialized from request if absent

        Returns:
            RawReply with the node's bytes, or a JSON-RPC error reply
        """
        if body is None:
            body = json.dumps(request.model_dump(exclude_unset=True)).encode()

        try:
            response = await self._client.post(
                self.rpc_url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Upstream unreachable forwarding {request.method}: {e!r}")
            return JsonRpcReply.failure(
                request.id,
                UpstreamUnavailable(f"upstream node unreachable: {e.__class__.__name__}"),
                request.jsonrpc,
            )

        try:
            parse_json(response.content, MAX_REPLY_DEPTH)
        except ValueError:
            logger.warning(
                f"Upstream returned unparsable reply for {request.method} (HTTP {response.status_code})"
            )
            return JsonRpcReply.failure(
                request.id,
                UpstreamUnavailable(f"upstream node returned an unparsable reply (HTTP {response.status_code})"),
                request.jsonrpc,
            )

        logger.debug(f"Forwarded {request.method} (HTTP {response.status_code})")
        return RawReply(
            body=response.content,
            status_code=response.status_code,
            media_type=response.headers.get("content-type", "application/json"),
        )

    async def call(self, method: str, params: list) -> Any:
        """Make a JSON-RPC call of our own and return its result.

        Raises:
            UpstreamUnavailable: On transport failure, unparsable reply or
                an error object from the node
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self.rpc_url, json=payload, timeout=self.timeout)
            data = parse_json(response.content, MAX_REPLY_DEPTH)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"upstream node unreachable during {method}: {e.__class__.__name__}")
        except ValueError:
            raise UpstreamUnavailable(f"upstream node returned an unparsable reply to {method}")

        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"upstream node returned a malformed reply to {method}")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise UpstreamUnavailable(f"{method} failed upstream: {message}")
        if "result" not in data:
            raise UpstreamUnavailable(f"upstream node returned no result for {method}")
        return data["result"]
