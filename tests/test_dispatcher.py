"""Tests for JSON-RPC dispatch."""

import asyncio
import json

import httpx
import pytest

from signerproxy.contracts.jsonrpc import JsonRpcReply, RawReply
from signerproxy.errors import SigningFailed
from signerproxy.services import Dispatcher, NodeDefaults, TransactionEncoder, UpstreamProxy
from signerproxy.signing import SignerCache
from signerproxy.signing.base import KeySigner, SignerProvider, SignerType
from tests.conftest import RECIPIENT, RPC_URL, make_provider


def call(method: str, params=None, request_id=1) -> bytes:
    payload = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return json.dumps(payload).encode()


def sign_call(request_id=1) -> bytes:
    tx = {"to": RECIPIENT, "value": "0x1", "nonce": "0x0", "chainId": "0x1", "gas": "0x5208"}
    return call("eth_signTransaction", [tx], request_id)


def dispatcher_for(client: httpx.AsyncClient, provider=None, request_timeout=5.0) -> Dispatcher:
    upstream = UpstreamProxy(RPC_URL, client)
    return Dispatcher(
        SignerCache(provider or make_provider()),
        TransactionEncoder(NodeDefaults(upstream)),
        upstream,
        request_timeout=request_timeout,
    )


class RejectingSigner(KeySigner):
    async def sign_digest(self, digest: bytes):
        raise SigningFailed("key is not allowed to sign")


class RejectingProvider(SignerProvider):
    """Resolves every key to a signer the backend refuses to use."""

    def __init__(self):
        super().__init__(SignerType.LOCAL)

    async def resolve(self, key_id):
        return RejectingSigner(key_id, "0x" + "33" * 20)


class ExplodingProvider(SignerProvider):
    def __init__(self):
        super().__init__(SignerType.LOCAL)

    async def resolve(self, key_id):
        raise RuntimeError("driver bug")


class TestLocalMethods:
    """Tests for locally handled methods."""

    @pytest.mark.asyncio
    async def test_sign_transaction_echoes_id(self, dispatcher):
        reply = await dispatcher.handle_body(sign_call("abc"), "1")

        assert isinstance(reply, JsonRpcReply)
        assert not reply.is_error
        assert reply.id == "abc"
        assert reply.result.startswith("0x02")

    @pytest.mark.asyncio
    async def test_empty_params(self, dispatcher, provider):
        """Empty params is rejected before the backend is touched."""
        reply = await dispatcher.handle_body(call("eth_signTransaction", [], 3), "1")

        assert reply.to_dict() == {
            "id": 3,
            "jsonrpc": "2.0",
            "error": {"code": -32602, "message": "params is empty"},
        }
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_absent_params(self, dispatcher):
        reply = await dispatcher.handle_body(call("eth_signTransaction", None, 4), "1")
        assert reply.error.code == -32602
        assert reply.error.message == "params is empty"
        assert reply.id == 4

    @pytest.mark.asyncio
    async def test_unknown_key(self, dispatcher, provider):
        """An unknown key is one resolve attempt and no cache entry."""
        reply = await dispatcher.handle_body(sign_call(5), "42")

        assert reply.id == 5
        assert reply.error.code == -32001
        assert provider.calls == [42]
        assert 42 not in dispatcher.cache

    @pytest.mark.asyncio
    async def test_missing_key(self, dispatcher, provider):
        """Signing needs a key in the path."""
        reply = await dispatcher.handle_body(sign_call(6))

        assert reply.error.code == -32602
        assert provider.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key_id", ["abc", "70000", "", "²"])
    async def test_invalid_key(self, dispatcher, provider, key_id):
        reply = await dispatcher.handle_body(sign_call(7), key_id)

        assert reply.error.code == -32602
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_signer_version(self, dispatcher, node):
        reply = await dispatcher.handle_body(call("signer_version", [], 8))

        assert reply.result == "signer-proxy/0.1.0"
        assert node.requests == []

    @pytest.mark.asyncio
    async def test_signing_failure(self, http_client):
        dispatcher = dispatcher_for(http_client, RejectingProvider())
        reply = await dispatcher.handle_body(sign_call(9), "1")

        assert reply.id == 9
        assert reply.error.code == -32002

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, http_client):
        """Faults outside the error taxonomy become a generic internal error."""
        dispatcher = dispatcher_for(http_client, ExplodingProvider())
        reply = await dispatcher.handle_body(sign_call(10), "1")

        assert reply.error.code == -32603
        assert reply.error.message == "internal error"

    @pytest.mark.asyncio
    async def test_timeout_keeps_resolving(self, http_client):
        """A timed-out request still leaves the key cached for the next one."""
        provider = make_provider(delay=0.2)
        dispatcher = dispatcher_for(http_client, provider, request_timeout=0.05)

        reply = await dispatcher.handle_body(sign_call(11), "7")
        assert reply.id == 11
        assert reply.error.code == -32004

        await asyncio.sleep(0.3)
        assert 7 in dispatcher.cache
        assert provider.calls == [7]


class TestForwarding:
    """Tests for methods forwarded to the upstream node."""

    @pytest.mark.asyncio
    async def test_forwarded_verbatim(self):
        """Request and reply bytes pass through unchanged."""
        body = b'{"jsonrpc": "2.0",   "id": "x-1", "method": "eth_blockNumber", "params": []}'
        node_reply = b'{"result":"0x10",  "id":"x-1","jsonrpc":"2.0"}\n'
        received = []

        def node(request):
            received.append(request.content)
            return httpx.Response(200, content=node_reply, headers={"Content-Type": "application/json"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(node)) as client:
            reply = await dispatcher_for(client).handle_body(body, "1")

        assert isinstance(reply, RawReply)
        assert received == [body]
        assert reply.body == node_reply
        assert reply.status_code == 200

    @pytest.mark.asyncio
    async def test_node_errors_relayed(self, dispatcher):
        """Error replies from the node are relayed, not rewritten."""
        reply = await dispatcher.handle_body(call("eth_unknownMethod", [], 12))

        assert isinstance(reply, RawReply)
        assert json.loads(reply.body)["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_forwarding_does_not_resolve_key(self, dispatcher, provider):
        await dispatcher.handle_body(call("eth_chainId", [], 2), "42")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_upstream_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            reply = await dispatcher_for(client).handle_body(call("eth_chainId", [], 13))

        assert isinstance(reply, JsonRpcReply)
        assert reply.id == 13
        assert reply.error.code == -32003

    @pytest.mark.asyncio
    async def test_upstream_unparsable(self):
        def bad_gateway(request):
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(bad_gateway)) as client:
            reply = await dispatcher_for(client).handle_body(call("eth_chainId", [], "q"))

        assert reply.id == "q"
        assert reply.error.code == -32003
        assert "502" in reply.error.message

    @pytest.mark.asyncio
    async def test_upstream_reply_nested_too_deeply(self):
        def nested(request):
            return httpx.Response(200, content=b"[" * 200_000 + b"]" * 200_000)

        async with httpx.AsyncClient(transport=httpx.MockTransport(nested)) as client:
            reply = await dispatcher_for(client).handle_body(call("eth_chainId", [], 15))

        assert isinstance(reply, JsonRpcReply)
        assert reply.id == 15
        assert reply.error.code == -32003


class TestMalformedRequests:
    """Tests for bodies that are not valid JSON-RPC calls."""

    @pytest.mark.asyncio
    async def test_parse_error(self, dispatcher):
        reply = await dispatcher.handle_body(b"{not json", "1")
        assert reply.to_dict() == {
            "id": None,
            "jsonrpc": "2.0",
            "error": {"code": -32700, "message": "parse error"},
        }

    @pytest.mark.asyncio
    async def test_deeply_nested_body(self, dispatcher, node, provider):
        """Pathological nesting is a parse error, not a crash."""
        reply = await dispatcher.handle_body(b"[" * 200_000 + b"]" * 200_000, "1")

        assert reply.id is None
        assert reply.error.code == -32700
        assert node.requests == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_brackets_inside_strings_are_not_nesting(self, dispatcher):
        tx = {"to": RECIPIENT, "value": "0x1", "nonce": "0x0", "chainId": "0x1", "gas": "0x5208"}
        payload = {"jsonrpc": "2.0", "id": "[[[[" * 100, "method": "eth_signTransaction", "params": [tx]}

        reply = await dispatcher.handle_body(json.dumps(payload).encode(), "1")

        assert not reply.is_error
        assert reply.id == "[[[[" * 100

    @pytest.mark.asyncio
    async def test_batch_rejected(self, dispatcher, node):
        reply = await dispatcher.handle_body(b"[]", "1")
        assert reply.error.code == -32600
        assert node.requests == []

    @pytest.mark.asyncio
    async def test_non_object(self, dispatcher):
        reply = await dispatcher.handle_body(b'"eth_chainId"')
        assert reply.error.code == -32600

    @pytest.mark.asyncio
    async def test_missing_method_echoes_id(self, dispatcher):
        reply = await dispatcher.handle_body(b'{"jsonrpc": "2.0", "id": 14, "params": []}')

        assert reply.id == 14
        assert reply.error.code == -32600
        assert "method" in reply.error.message
