"""Target resolution - turn a configured destination into scheme/host/port.

Accepted forms:
    httpbin.org                 -> http://httpbin.org:80
    localhost:8080              -> http://localhost:8080
    https://api.github.com      -> https://api.github.com:443
    http://[::1]:9000/ignored   -> http://[::1]:9000

Anything else raises ConfigError. This only ever runs while a proxy is
being configured.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit

from .errors import ConfigError

DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
}


@dataclass(frozen=True)
class TargetDescriptor:
    """Where the proxy sends requests. Shared read-only across requests."""

    scheme: str
    host: str
    port: int

    @property
    def is_secure(self) -> bool:
        return self.scheme == "https"

    @property
    def netloc(self) -> str:
        """Host header value: the port is omitted when it is the scheme default."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    def url_for(self, path: str) -> str:
        """Absolute URL for a path (query string included) on this target."""
        if not path.startswith("/"):
            path = "/" + path
        return self.origin + path


def resolve_target(target: str) -> TargetDescriptor:
    """Parse a bare hostname or a full URL into a TargetDescriptor.

    Args:
        target: "host", "host:port" or "scheme://host[:port][/...]"

    Returns:
        The resolved descriptor. Resolving the same target twice yields equal
        descriptors.

    Raises:
        ConfigError: if target is empty, has no host, an unsupported scheme
            or a bad port.
    """
    if target is None or not str(target).strip():
        raise ConfigError("Proxy target is empty")

    target = str(target).strip()

    # Bare hostnames have no scheme; urlsplit needs "//" to see a netloc.
    candidate = target if "://" in target else f"http://{target}"

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Cannot parse proxy target {target!r}: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ConfigError(f"Unsupported scheme {parts.scheme!r} in proxy target {target!r}")

    host = parts.hostname
    if not host:
        raise ConfigError(f"Proxy target {target!r} has no host")

    if port is None:
        port = DEFAULT_PORTS[scheme]
    elif port == 0:
        raise ConfigError(f"Proxy target {target!r} has an invalid port")

    return TargetDescriptor(scheme=scheme, host=host, port=port)
