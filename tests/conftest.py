"""Pytest configuration and fixtures."""

import asyncio
import json
import os

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["ENVIRONMENT"] = "test"

from signerproxy.api.app import create_app
from signerproxy.config import Settings
from signerproxy.services import Dispatcher, NodeDefaults, TransactionEncoder, UpstreamProxy
from signerproxy.signing import SignerCache
from signerproxy.signing.base import KeyId, KeySigner, SignerProvider, SignerType
from signerproxy.signing.local import MOCK_KEYS, LocalProvider

RPC_URL = "http://node.test/rpc"

# Extra development key, not part of the mock set
KEY_SEVEN = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

RECIPIENT = "0x1111111111111111111111111111111111111111"


class CountingProvider(SignerProvider):
    """Local provider that records every resolve call.

    An optional delay keeps resolves in flight long enough to observe
    concurrency.
    """

    def __init__(self, inner: LocalProvider, delay: float = 0.0, exclusive: bool = False):
        super().__init__(SignerType.LOCAL)
        self.inner = inner
        self.delay = delay
        self.exclusive_transport = exclusive
        self.calls: list[KeyId] = []
        self.active = 0
        self.max_active = 0

    async def resolve(self, key_id: KeyId) -> KeySigner:
        self.calls.append(key_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return await self.inner.resolve(key_id)
        finally:
            self.active -= 1


class FakeNode:
    """Upstream JSON-RPC node served through httpx.MockTransport."""

    def __init__(self, results: dict | None = None):
        self.results = {
            "eth_chainId": "0x1",
            "eth_getTransactionCount": "0x0",
            "eth_estimateGas": "0x5208",
            "eth_gasPrice": "0x3b9aca00",
            "eth_maxPriorityFeePerGas": "0x3b9aca00",
            "eth_getBlockByNumber": {"number": "0x10", "baseFeePerGas": "0x7"},
        }
        if results:
            self.results.update(results)
        self.bodies: list[bytes] = []
        self.requests: list[dict] = []

    @property
    def methods(self) -> list[str]:
        return [request["method"] for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(request.content)
        payload = json.loads(request.content)
        self.requests.append(payload)

        method = payload["method"]
        if method in self.results:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": payload.get("id"), "result": self.results[method]}
            )
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": payload.get("id"),
                "error": {"code": -32601, "message": f"the method {method} does not exist"},
            },
        )


def make_settings(**overrides) -> Settings:
    values = {
        "rpc_url": RPC_URL,
        "signer_backend": "local",
        "local_mock_keys": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_provider(delay: float = 0.0, exclusive: bool = False) -> CountingProvider:
    local = LocalProvider(mock_keys=True)
    local.add_key(7, KEY_SEVEN)
    return CountingProvider(local, delay=delay, exclusive=exclusive)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
async def http_client(node):
    async with httpx.AsyncClient(transport=httpx.MockTransport(node)) as client:
        yield client


@pytest.fixture
def provider() -> CountingProvider:
    return make_provider()


@pytest.fixture
def upstream(http_client) -> UpstreamProxy:
    return UpstreamProxy(RPC_URL, http_client)


@pytest.fixture
def encoder(upstream) -> TransactionEncoder:
    return TransactionEncoder(NodeDefaults(upstream))


@pytest.fixture
def dispatcher(provider, encoder, upstream) -> Dispatcher:
    return Dispatcher(SignerCache(provider), encoder, upstream, request_timeout=5.0)


@pytest.fixture
async def key_one():
    """Signer for mock key 1."""
    return await LocalProvider(mock_keys=True).resolve(1)


@pytest.fixture
def key_one_private() -> bytes:
    return MOCK_KEYS[1]


@pytest.fixture
async def client(settings, provider, http_client):
    """Create async test client."""
    app = create_app(settings, provider=provider, http_client=http_client)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
