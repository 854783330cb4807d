"""Shared fixtures: a host aiohttp app with the proxy attached, and inbound requests."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from hookproxy import HookProxy, InboundRequest, ProxySettings, configure_observability

# Keep spans local; nothing is exported during tests. Tests that check
# upstream spans instrument their own client.
configure_observability(send_to_logfire=False, instrument=False)


@pytest.fixture
def make_inbound():
    """Build an InboundRequest without going through aiohttp."""

    def _make(method="GET", path="/", headers=None, body=None, **kwargs):
        return InboundRequest(method=method, path=path, headers=headers, body=body, **kwargs)

    return _make


@pytest.fixture
async def proxy_client():
    """Start a host app proxying to `target` and return an aiohttp TestClient.

    Usage:
        client = await proxy_client("httpbin.org", intercept=hook)
        resp = await client.get("/get")
    """
    clients: list[TestClient] = []

    async def _make(target="httpbin.org", middlewares=(), mode="route", **options):
        proxy = HookProxy(target, settings=ProxySettings(), **options)
        app = web.Application(middlewares=list(middlewares))
        if mode == "middleware":
            app.middlewares.append(proxy.middleware)

            async def fallback(request: web.Request) -> web.Response:
                return web.Response(text="handled locally")

            app.router.add_route("*", "/{path:.*}", fallback)
            proxy.install(app)
        else:
            proxy.attach(app)

        client = TestClient(TestServer(app))
        await client.start_server()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.close()
