"""Request forwarding - decorate, send once, buffer the reply.

The forwarder copies the inbound request into a ProxyRequest, runs the
decoration hook, sends the result to the target over httpx and reads the
whole upstream body before returning. There is exactly one attempt; any
transport failure becomes ProxyConnectionError.

The body is relayed as the upstream encoded it (Content-Encoding and the
caller's Accept-Encoding pass through untouched) unless an intercept hook
needs to read it, in which case httpx negotiates and decodes.
"""

import asyncio

import httpx
import logfire

from .errors import BodyTooLargeError, ClientDisconnected, DecorateError, ProxyConnectionError
from .models import HookSet, InboundRequest, ProxyRequest, UpstreamResponse
from .target import TargetDescriptor

# Headers that describe a single connection, not the message (RFC 7230 6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Not copied from the caller. httpx sets Content-Length from the body it
# actually sends.
SKIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "content-length",
}

# How often a pending upstream exchange checks whether the caller is still there
DISCONNECT_POLL_INTERVAL = 0.05


def build_proxy_request(
    inbound: InboundRequest,
    target: TargetDescriptor,
    preserve_host_header: bool = False,
    decode_body: bool = False,
) -> ProxyRequest:
    """Copy the inbound request into a fresh ProxyRequest aimed at target.

    With decode_body the caller's Accept-Encoding is dropped so httpx only
    negotiates encodings it can decode.
    """
    proxy_request = ProxyRequest.from_inbound(inbound, target)

    skipped = SKIP_REQUEST_HEADERS | {"accept-encoding"} if decode_body else SKIP_REQUEST_HEADERS
    for name in {key.lower() for key in proxy_request.headers}:
        if name in skipped:
            del proxy_request.headers[name]

    if not preserve_host_header or "host" not in proxy_request.headers:
        proxy_request.headers["host"] = target.netloc

    return proxy_request


def decorate(proxy_request: ProxyRequest, hooks: HookSet) -> ProxyRequest:
    """Run the decoration hook once and return the request to send.

    A hook that returns None has mutated proxy_request in place (or done
    nothing); anything else it returns must be a ProxyRequest and replaces it.
    """
    if hooks.decorate_request is None:
        return proxy_request

    target = proxy_request.target
    try:
        result = hooks.decorate_request(proxy_request)
    except Exception as e:
        raise DecorateError(f"decorate_request hook failed: {e}", url=proxy_request.url) from e

    if result is None:
        result = proxy_request
    elif not isinstance(result, ProxyRequest):
        raise DecorateError(
            f"decorate_request must return a ProxyRequest or None, got {type(result).__name__}",
            url=proxy_request.url,
        )

    # Hooks rewrite the request, never the destination.
    return result.readdress(target)


class RequestForwarder:
    """Sends ProxyRequests upstream over a shared httpx.AsyncClient.

    Usage:
        forwarder = RequestForwarder(httpx.AsyncClient(timeout=None))
        upstream = await forwarder.forward(inbound, target, hooks)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        preserve_host_header: bool = False,
        max_body_bytes: int | None = None,
    ):
        """Initialize the forwarder.

        Args:
            http_client: Client used for every upstream call (owned by the caller)
            preserve_host_header: Forward the caller's Host header instead of the target's
            max_body_bytes: Ceiling on the buffered upstream body (None = no limit)
        """
        self._http_client = http_client
        self.preserve_host_header = preserve_host_header
        self.max_body_bytes = max_body_bytes

    async def forward(
        self,
        inbound: InboundRequest,
        target: TargetDescriptor,
        hooks: HookSet,
    ) -> UpstreamResponse:
        """Decorate, send and fully read one upstream exchange.

        The body is decoded only when hooks.intercept will read it.

        Raises:
            DecorateError: the decoration hook failed
            ProxyConnectionError: the upstream could not be reached or the transfer broke
            BodyTooLargeError: the upstream body exceeded max_body_bytes
            ClientDisconnected: the caller went away before the exchange finished
        """
        decode_body = hooks.intercept is not None
        proxy_request = build_proxy_request(
            inbound, target, self.preserve_host_header, decode_body=decode_body
        )
        proxy_request = decorate(proxy_request, hooks)
        return await self.send(proxy_request, inbound, decode_body=decode_body)

    async def send(
        self,
        proxy_request: ProxyRequest,
        inbound: InboundRequest,
        decode_body: bool = False,
    ) -> UpstreamResponse:
        """Transmit a prepared request and buffer the response.

        The exchange races a watcher on the caller's connection. If the
        caller goes first, the httpx call is cancelled wherever it is
        (waiting for headers or reading the body) and ClientDisconnected is
        raised.
        """
        url = proxy_request.url
        body = proxy_request.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        request = self._http_client.build_request(
            proxy_request.method,
            url,
            headers=list(proxy_request.headers.items()),
            content=body if body else None,
        )
        if not decode_body and "accept-encoding" not in proxy_request.headers:
            # The client's default would offer encodings the caller never asked for.
            request.headers.pop("accept-encoding", None)

        logfire.debug(
            "Forwarding {method} {url} ({size} bytes)",
            method=proxy_request.method,
            url=url,
            size=len(body) if body else 0,
        )

        exchange = asyncio.ensure_future(self._exchange(request, url, decode_body))
        watcher = asyncio.ensure_future(self._wait_for_disconnect(inbound))
        try:
            done, _ = await asyncio.wait({exchange, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Also runs when the handler task itself is cancelled.
            for task in (exchange, watcher):
                task.cancel()
            await asyncio.gather(exchange, watcher, return_exceptions=True)

        if watcher in done:
            logfire.debug("Caller disconnected; upstream exchange with {url} aborted", url=url)
            raise ClientDisconnected(f"Caller disconnected while waiting on {url}", url=url)
        return exchange.result()

    async def _wait_for_disconnect(self, inbound: InboundRequest) -> None:
        while not inbound.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    async def _exchange(self, request: httpx.Request, url: str, decode_body: bool) -> UpstreamResponse:
        try:
            response = await self._http_client.send(request, stream=True)
        except httpx.TransportError as e:
            raise ProxyConnectionError(f"Cannot reach upstream {url}: {e!r}", url=url) from e

        # Closing the stream aborts whatever the upstream has left to send.
        try:
            chunks: list[bytes] = []
            received = 0
            stream = response.aiter_bytes() if decode_body else response.aiter_raw()
            async for chunk in stream:
                received += len(chunk)
                if self.max_body_bytes is not None and received > self.max_body_bytes:
                    raise BodyTooLargeError(
                        f"Upstream body from {url} exceeds {self.max_body_bytes} bytes",
                        url=url,
                    )
                chunks.append(chunk)
        except httpx.TransportError as e:
            raise ProxyConnectionError(f"Transfer from {url} failed: {e!r}", url=url) from e
        except httpx.DecodingError as e:
            raise ProxyConnectionError(f"Undecodable body from {url}: {e!r}", url=url) from e
        finally:
            await response.aclose()

        return UpstreamResponse(
            status=response.status_code,
            headers=response.headers,
            body=b"".join(chunks),
            url=url,
            decoded=decode_body,
        )
