"""hookproxy - an aiohttp reverse proxy with request and response hooks.

Architecture:
- Target resolved once, when the proxy is configured
- Outbound request decorated by an optional hook, sent once over httpx
- Upstream body buffered in full, optionally replaced by an intercept hook
- Finished response written in one piece, status/headers/cookies relayed
"""

from .config import ProxySettings
from .errors import (
    BodyTooLargeError,
    ClientDisconnected,
    ConfigError,
    DecorateError,
    InterceptError,
    ProxyConnectionError,
    ProxyError,
    proxy_error_middleware,
)
from .forwarder import RequestForwarder
from .models import (
    STAGED_HEADERS,
    STAGED_STATUS,
    HookSet,
    InboundRequest,
    InterceptResult,
    ProxyRequest,
    ProxyResponse,
    UpstreamResponse,
)
from .observability import configure as configure_observability
from .observability import instrument_upstream
from .pipeline import ResponsePipeline, callback_intercept
from .proxy import HookProxy
from .target import TargetDescriptor, resolve_target

__all__ = [
    # Main entry point
    "HookProxy",
    "callback_intercept",
    "STAGED_STATUS",
    "STAGED_HEADERS",
    # Target resolution
    "TargetDescriptor",
    "resolve_target",
    # Per-request data
    "InboundRequest",
    "ProxyRequest",
    "ProxyResponse",
    "UpstreamResponse",
    "HookSet",
    "InterceptResult",
    # Lower-level components
    "RequestForwarder",
    "ResponsePipeline",
    "ProxySettings",
    # Errors
    "ProxyError",
    "ConfigError",
    "ProxyConnectionError",
    "InterceptError",
    "DecorateError",
    "BodyTooLargeError",
    "ClientDisconnected",
    "proxy_error_middleware",
    # Observability
    "configure_observability",
    "instrument_upstream",
]
__version__ = "0.1.0"
