"""aiohttp integration - the proxy as a handler, a middleware or a server.

HookProxy ties the pieces together for one configured target:
1. Snapshots the aiohttp request (InboundRequest)
2. Forwards it upstream, decorating it first (RequestForwarder)
3. Buffers and intercepts the reply (ResponsePipeline)
4. Writes the finished response in one piece

The target is resolved when the proxy is built, so a bad target fails at
startup rather than on the first request.
"""

import socket
from typing import Callable

import httpx
import logfire
from aiohttp import web

from .config import ProxySettings
from .errors import ProxyError
from .forwarder import RequestForwarder
from .models import (
    DecorateRequestHook,
    HookSet,
    InboundRequest,
    InterceptHook,
    ProxyResponse,
)
from .pipeline import ResponsePipeline
from .target import TargetDescriptor, resolve_target

# Decides per request whether the proxy handles it (middleware mode)
RequestFilter = Callable[[web.Request], bool]
# Computes the upstream path (query string included) for a request
ForwardPath = Callable[[web.Request], str]


def _find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


class RelayedResponse(web.Response):
    """The finished ProxyResponse as an aiohttp response."""

    def __init__(self, response: ProxyResponse):
        super().__init__(status=response.status, headers=response.headers, body=response.body)
        self.upstream_content_type = "Content-Type" in response.headers


async def strip_default_content_type(request: web.Request, response: web.StreamResponse) -> None:
    """on_response_prepare signal: drop the Content-Type aiohttp adds by default.

    aiohttp gives every non-empty body application/octet-stream when no
    Content-Type is set; a relayed response carries only what the upstream
    sent.
    """
    if isinstance(response, RelayedResponse) and not response.upstream_content_type:
        response.headers.popall("Content-Type", None)


class HookProxy:
    """Reverse proxy to a single upstream with request/response hooks.

    Usage (catch-all route):
        proxy = HookProxy("httpbin.org", intercept=add_banner)
        proxy.attach(app)

    Usage (middleware, only for some requests):
        proxy = HookProxy(
            "https://api.github.com",
            filter=lambda request: request.path.startswith("/repos"),
        )
        app = web.Application(middlewares=[proxy.middleware])
        proxy.install(app)

    Usage (standalone):
        async with HookProxy("localhost:8080") as proxy:
            await proxy.start()
            print(proxy.base_url)
            ...
            await proxy.stop()
    """

    def __init__(
        self,
        target: str | TargetDescriptor,
        *,
        decorate_request: DecorateRequestHook | None = None,
        intercept: InterceptHook | None = None,
        filter: RequestFilter | None = None,
        forward_path: ForwardPath | None = None,
        preserve_host_header: bool = False,
        settings: ProxySettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the proxy.

        Args:
            target: Bare hostname or full URL of the upstream
            decorate_request: Rewrites the outbound ProxyRequest before it is sent
            intercept: Replaces the buffered response body before it is returned
            filter: Middleware mode only; requests it rejects go to the next handler
            forward_path: Computes the upstream path instead of the request's own
            preserve_host_header: Send the caller's Host header upstream
            settings: Transport settings (default: read from the environment)
            http_client: Client to use instead of one built from settings; not closed by us

        Raises:
            ConfigError: if target cannot be resolved or a setting is invalid
        """
        self.target = target if isinstance(target, TargetDescriptor) else resolve_target(target)
        self.hooks = HookSet(decorate_request=decorate_request, intercept=intercept)
        self.filter = filter
        self.forward_path = forward_path
        self.settings = settings if settings is not None else ProxySettings.from_env()

        self._owns_client = http_client is None
        self._http_client = http_client
        self._preserve_host_header = preserve_host_header
        self._forwarder: RequestForwarder | None = None
        self._pipeline = ResponsePipeline()

        self._host = "127.0.0.1"
        self._port: int | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

        logfire.debug(f"Proxy configured for {self.target.origin}")

    # -------------------------------------------------------------------------
    # Client lifecycle
    # -------------------------------------------------------------------------

    @property
    def forwarder(self) -> RequestForwarder:
        """The forwarder, creating the httpx client on first use."""
        if self._forwarder is None:
            if self._http_client is None:
                self._http_client = self.settings.create_client()
            self._forwarder = RequestForwarder(
                self._http_client,
                preserve_host_header=self._preserve_host_header,
                max_body_bytes=self.settings.max_body_bytes,
            )
        return self._forwarder

    async def aclose(self) -> None:
        """Close the httpx client if we created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
        if self._owns_client:
            self._http_client = None
        self._forwarder = None

    async def __aenter__(self) -> "HookProxy":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
        await self.aclose()

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    async def proxy(self, inbound: InboundRequest) -> ProxyResponse:
        """Forward one request and run the response pipeline. Host-neutral."""
        upstream = await self.forwarder.forward(inbound, self.target, self.hooks)
        return await self._pipeline.process(upstream, inbound, self.hooks)

    async def handle(self, request: web.Request) -> web.Response:
        """aiohttp handler: proxy the request and return the finished response.

        Proxy errors are logged and re-raised for the host's middleware chain.
        """
        path = self.forward_path(request) if self.forward_path else None

        with logfire.span(
            "hookproxy.forward",
            method=request.method,
            path=request.path_qs,
            target=self.target.origin,
        ) as span:
            inbound = await InboundRequest.from_aiohttp(request, path=path)
            try:
                response = await self.proxy(inbound)
            except ProxyError as e:
                logfire.error(f"Proxy error: {e}")
                span.set_attribute("error", str(e))
                span.set_attribute("error_type", type(e).__name__)
                raise

            span.set_attribute("status_code", response.status)
            span.set_attribute("response_size_bytes", response.content_length)
            span.set_attribute("intercepted", self.hooks.intercept is not None)

        # One Response object: headers and body go out together or not at all.
        return RelayedResponse(response)

    @property
    def middleware(self):
        """aiohttp middleware that proxies requests accepted by `filter`."""

        @web.middleware
        async def hookproxy_middleware(request: web.Request, handler) -> web.StreamResponse:
            if self.filter is not None and not self.filter(request):
                return await handler(request)
            return await self.handle(request)

        return hookproxy_middleware

    def install(self, app: web.Application) -> None:
        """Register the proxy's signals on a host app, without adding a route.

        Middleware-mode hosts call this themselves; attach() does it for you.
        Hosts should also run the app with handler_cancellation=True (for
        example web.run_app(app, handler_cancellation=True)) so a caller that
        disconnects cancels the handler and with it the upstream exchange.
        """
        app.on_response_prepare.append(strip_default_content_type)

        async def _close(_app: web.Application) -> None:
            await self.aclose()

        app.on_cleanup.append(_close)

    def attach(self, app: web.Application, path: str = "/{path:.*}") -> None:
        """Register a catch-all route on app and install the proxy's signals."""
        app.router.add_route("*", path, self.handle)
        self.install(app)

    # -------------------------------------------------------------------------
    # Standalone server
    # -------------------------------------------------------------------------

    async def start(self, host: str = "127.0.0.1", port: int | None = None) -> int:
        """Serve the proxy on its own aiohttp server.

        Returns:
            The port number the server is listening on.
        """
        self._host = host
        self._port = port or _find_free_port()

        # Default client_max_size is 1 MB; proxied uploads can be larger.
        app = web.Application(client_max_size=0)
        app.router.add_route("*", "/{path:.*}", self.handle)
        app.on_response_prepare.append(strip_default_content_type)

        # Cancel the handler when the caller disconnects (off by default since aiohttp 3.9).
        self._runner = web.AppRunner(app, handler_cancellation=True)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, self._port)
        await self._site.start()

        logfire.info(f"Proxy to {self.target.origin} listening on http://{host}:{self._port}")
        return self._port

    async def stop(self) -> None:
        """Stop the standalone server, if running."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logfire.debug("Proxy server stopped")

        self._site = None

    @property
    def base_url(self) -> str:
        """Get the base URL for the standalone server."""
        if self._port is None or self._runner is None:
            raise RuntimeError("Proxy not started")
        return f"http://{self._host}:{self._port}"

    @property
    def port(self) -> int | None:
        """Get the port number."""
        return self._port
