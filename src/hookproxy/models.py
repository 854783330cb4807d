"""Per-request data carried through the proxy.

InboundRequest is what the host handed us, ProxyRequest is what goes
upstream, UpstreamResponse is what came back, and ProxyResponse is what the
caller will get. Headers are CIMultiDict throughout (the map aiohttp uses):
insertion ordered, case-insensitive, and `headers[name] = value` replaces
every earlier value for that name.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Union

from aiohttp import web
from multidict import CIMultiDict

from .target import TargetDescriptor

# Request keys an earlier host middleware can use to stage the outbound
# status or headers. Staged values win over the upstream's. Typed keys
# where aiohttp has them, plain strings on older releases.
if hasattr(web, "RequestKey"):
    STAGED_STATUS = web.RequestKey("staged_status", int)
    STAGED_HEADERS = web.RequestKey("staged_headers", Mapping)
else:
    STAGED_STATUS = "hookproxy.staged_status"
    STAGED_HEADERS = "hookproxy.staged_headers"


def _copy_headers(headers: Mapping[str, str] | None) -> CIMultiDict[str]:
    copied: CIMultiDict[str] = CIMultiDict()
    if headers is None:
        return copied
    items = headers.items()
    # httpx.Headers.items() folds repeats; multi_items() keeps them
    if hasattr(headers, "multi_items"):
        items = headers.multi_items()
    for key, value in items:
        copied.add(key, value)
    return copied


def _never_disconnected() -> bool:
    return False


@dataclass
class InboundRequest:
    """The request as the host framework parsed it.

    `raw` is the host's own request object (an aiohttp web.Request when the
    proxy is attached to aiohttp) for hooks that need more than this.
    """

    method: str
    path: str
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    body: bytes | None = None
    staged_status: int | None = None
    staged_headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    raw: Any = None
    is_disconnected: Callable[[], bool] = _never_disconnected

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = _copy_headers(self.headers)
        self.staged_headers = _copy_headers(self.staged_headers)

    @classmethod
    async def from_aiohttp(cls, request, path: str | None = None) -> "InboundRequest":
        """Snapshot an aiohttp request, reading its body in full.

        Args:
            request: The aiohttp web.Request
            path: Upstream path to use instead of request.path_qs
        """
        body = await request.read() if request.body_exists else None

        def is_disconnected() -> bool:
            transport = request.transport
            return transport is None or transport.is_closing()

        return cls(
            method=request.method,
            path=path if path is not None else request.raw_path,
            headers=request.headers,
            body=body,
            staged_status=request.get(STAGED_STATUS),
            staged_headers=request.get(STAGED_HEADERS),
            raw=request,
            is_disconnected=is_disconnected,
        )


@dataclass
class ProxyRequest:
    """The outbound request. Decoration hooks may change any field but target."""

    method: str
    path: str
    headers: CIMultiDict[str]
    body: bytes | None
    target: TargetDescriptor

    @property
    def host(self) -> str:
        return self.target.host

    @property
    def url(self) -> str:
        return self.target.url_for(self.path)

    @classmethod
    def from_inbound(cls, inbound: InboundRequest, target: TargetDescriptor) -> "ProxyRequest":
        return cls(
            method=inbound.method,
            path=inbound.path,
            headers=_copy_headers(inbound.headers),
            body=inbound.body,
            target=target,
        )

    def readdress(self, target: TargetDescriptor) -> "ProxyRequest":
        """Same request aimed at `target`."""
        if self.target == target:
            return self
        return replace(self, target=target)


@dataclass
class UpstreamResponse:
    """What the upstream sent back, body already read in full."""

    status: int
    headers: CIMultiDict[str]
    body: bytes
    url: str = ""
    # True when httpx decoded the body; Content-Encoding no longer applies
    decoded: bool = False

    def __post_init__(self) -> None:
        self.headers = _copy_headers(self.headers)


@dataclass
class ProxyResponse:
    """The response being assembled for the caller.

    Intercept hooks receive this and may change `status` or `headers`; the
    body they return replaces `body`.
    """

    status: int
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    body: bytes = b""

    @property
    def content_length(self) -> int:
        return len(self.body)


@dataclass(frozen=True)
class InterceptResult:
    """Outcome of one intercept call: a replacement body or an error."""

    body: bytes | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, body: bytes) -> "InterceptResult":
        return cls(body=body)

    @classmethod
    def failure(cls, error: BaseException) -> "InterceptResult":
        return cls(error=error)


# (ProxyRequest) -> replacement or None to keep the (mutated) original
DecorateRequestHook = Callable[[ProxyRequest], Union[ProxyRequest, None]]

# (body, inbound, response) -> new body, directly or awaitable
InterceptHook = Callable[
    [bytes, InboundRequest, ProxyResponse],
    Union[bytes, str, Awaitable[Union[bytes, str]]],
]


@dataclass(frozen=True)
class HookSet:
    """Hooks configured once per proxy."""

    decorate_request: DecorateRequestHook | None = None
    intercept: InterceptHook | None = None
