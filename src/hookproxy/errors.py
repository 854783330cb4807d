"""Failure taxonomy for the proxy.

Everything the proxy raises derives from ProxyError and carries the HTTP
status a host should answer with. ConfigError happens once, when the proxy
is built. The rest are per-request and travel up aiohttp's middleware chain
unless the host installs proxy_error_middleware to render them.
"""

import logfire
from aiohttp import web


class ProxyError(Exception):
    """Base class for proxy failures."""

    status_code: int = 500

    def __init__(self, message: str, *, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url


class ConfigError(ProxyError, ValueError):
    """The target or a setting could not be understood. Raised at setup."""


class ProxyConnectionError(ProxyError, ConnectionError):
    """The upstream was unreachable or the transfer broke off."""

    status_code = 502


class DecorateError(ProxyError):
    """The decoration hook raised or returned something other than a request."""


class InterceptError(ProxyError):
    """The intercept hook reported a failure. Nothing was written."""


class BodyTooLargeError(ProxyError):
    """The upstream body grew past the configured buffering ceiling."""

    status_code = 502


class ClientDisconnected(ProxyError):
    """The original caller went away before the response was ready."""

    # nginx's "client closed request"
    status_code = 499


@web.middleware
async def proxy_error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render ProxyError as a short plain-text response.

    Optional: without it, proxy errors reach aiohttp's default handling
    (a 500 with the traceback logged).
    """
    try:
        return await handler(request)
    except ClientDisconnected:
        logfire.debug(f"Client went away: {request.method} {request.path_qs}")
        # Nobody is listening; aiohttp drops the write.
        return web.Response(status=ClientDisconnected.status_code)
    except ProxyError as e:
        logfire.error(
            "Proxy failure {error_type} on {method} {path}: {message}",
            error_type=type(e).__name__,
            method=request.method,
            path=request.path_qs,
            message=e.message,
        )
        return web.Response(status=e.status_code, text=f"{type(e).__name__}: {e.message}")
