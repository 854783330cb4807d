"""Response pipeline - buffer, intercept, finalize.

Takes the fully read UpstreamResponse and produces the ProxyResponse the
host writes back. The intercept hook, when configured, sees the whole body
and may replace it; its outcome is awaited exactly once and nothing is
handed to the host until it has resolved.
"""

import asyncio
import inspect
from typing import Callable

import logfire

from .errors import ClientDisconnected, InterceptError
from .forwarder import HOP_BY_HOP_HEADERS
from .models import HookSet, InboundRequest, InterceptResult, ProxyResponse, UpstreamResponse

# Not relayed from upstream. Content-Length is recomputed from what is
# actually delivered.
SKIP_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {
    "content-length",
}

# Responses that never carry a body
BODYLESS_STATUSES = {204, 304}


def callback_intercept(fn: Callable) -> Callable:
    """Adapt a continuation-style intercept hook to an awaitable one.

    The wrapped hook is called as fn(body, inbound, response, done) and must
    call done(error, new_body) once. The first call settles a single-shot
    future; later calls are ignored with a warning.

    Usage:
        def add_flag(body, inbound, response, done):
            data = json.loads(body)
            data["intercepted"] = True
            done(None, json.dumps(data))

        proxy = HookProxy("httpbin.org", intercept=callback_intercept(add_flag))
    """

    async def intercept(body: bytes, inbound: InboundRequest, response: ProxyResponse):
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def done(error: BaseException | None = None, new_body: bytes | str | None = None) -> None:
            if future.done():
                logfire.warning("Intercept callback invoked more than once; ignoring")
                return
            if error is not None:
                if not isinstance(error, BaseException):
                    error = InterceptError(str(error))
                future.set_exception(error)
            else:
                future.set_result(new_body)

        fn(body, inbound, response, done)
        return await future

    intercept.__wrapped__ = fn
    return intercept


def _coerce_body(value) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise InterceptError(
        f"intercept must produce bytes or str, got {type(value).__name__}"
    )


class ResponsePipeline:
    """Turns an upstream reply into the response delivered to the caller."""

    def start_response(self, upstream: UpstreamResponse, inbound: InboundRequest) -> ProxyResponse:
        """ProxyResponse seeded from the upstream status, headers and body."""
        response = ProxyResponse(status=upstream.status, body=upstream.body)
        for key, value in upstream.headers.items():
            name = key.lower()
            if name == "content-encoding" and upstream.decoded:
                continue
            # A HEAD reply has no body to measure; keep the upstream length.
            if name == "content-length" and inbound.method == "HEAD":
                response.headers.add(key, value)
            elif name not in SKIP_RESPONSE_HEADERS:
                response.headers.add(key, value)
        return response

    async def run_intercept(
        self,
        hooks: HookSet,
        body: bytes,
        inbound: InboundRequest,
        response: ProxyResponse,
    ) -> InterceptResult:
        """Invoke the intercept hook and settle it into a single result."""
        try:
            outcome = hooks.intercept(body, inbound, response)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return InterceptResult.success(_coerce_body(outcome))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return InterceptResult.failure(e)

    async def process(
        self,
        upstream: UpstreamResponse,
        inbound: InboundRequest,
        hooks: HookSet,
    ) -> ProxyResponse:
        """Buffer, intercept and finalize one response.

        Raises:
            ClientDisconnected: the caller is gone; the hook was not run
            InterceptError: the hook failed; no response is produced
        """
        response = self.start_response(upstream, inbound)

        if hooks.intercept is not None:
            if inbound.is_disconnected():
                raise ClientDisconnected(
                    "Caller disconnected before interception", url=upstream.url
                )

            with logfire.span(
                "hookproxy.intercept",
                status_code=upstream.status,
                body_size=len(upstream.body),
            ) as span:
                result = await self.run_intercept(hooks, upstream.body, inbound, response)
                if not result.ok:
                    error = result.error
                    span.set_attribute("error", str(error))
                    if isinstance(error, InterceptError):
                        raise error
                    raise InterceptError(
                        f"intercept hook failed: {error}", url=upstream.url
                    ) from error

                response.body = result.body
                span.set_attribute("new_body_size", len(response.body))

        return self.finalize(response, inbound)

    def finalize(self, response: ProxyResponse, inbound: InboundRequest) -> ProxyResponse:
        """Apply host-staged status/headers and fix Content-Length."""
        if inbound.staged_status is not None:
            response.status = int(inbound.staged_status)

        for key in inbound.staged_headers.keys():
            response.headers.popall(key, None)
        for key, value in inbound.staged_headers.items():
            response.headers.add(key, value)

        if response.status < 200 or response.status in BODYLESS_STATUSES:
            response.headers.popall("content-length", None)
            response.body = b""
        elif inbound.method == "HEAD":
            response.body = b""
        else:
            response.headers["Content-Length"] = str(response.content_length)

        return response
