"""Settings for the transport around the proxy core.

Read from the environment:
    HOOKPROXY_TIMEOUT           - seconds per upstream call (unset = no timeout)
    HOOKPROXY_MAX_BODY_BYTES    - ceiling on a buffered upstream body (unset = none)
    HOOKPROXY_VERIFY_TLS        - verify upstream certificates (default: yes)
    HOOKPROXY_FOLLOW_REDIRECTS  - follow upstream redirects (default: no)
"""

import os
from dataclasses import dataclass
from typing import Mapping

import httpx

from .errors import ConfigError

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _number(env: Mapping[str, str], name: str, kind: type):
    raw = env.get(name, "").strip()
    if not raw:
        return None
    try:
        value = kind(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a {kind.__name__}, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class ProxySettings:
    """Transport knobs. None everywhere means "no limit"."""

    timeout: float | None = None
    max_body_bytes: int | None = None
    verify_tls: bool = True
    follow_redirects: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ProxySettings":
        """Build settings from HOOKPROXY_* variables.

        Raises:
            ConfigError: if a variable is set to something unusable
        """
        env = os.environ if env is None else env
        return cls(
            timeout=_number(env, "HOOKPROXY_TIMEOUT", float),
            max_body_bytes=_number(env, "HOOKPROXY_MAX_BODY_BYTES", int),
            verify_tls=_flag(env, "HOOKPROXY_VERIFY_TLS", True),
            follow_redirects=_flag(env, "HOOKPROXY_FOLLOW_REDIRECTS", False),
        )

    def create_client(self) -> httpx.AsyncClient:
        """A fresh httpx client configured from these settings.

        Retries stay at zero: every request gets exactly one attempt.
        """
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=self.follow_redirects,
            transport=httpx.AsyncHTTPTransport(retries=0, verify=self.verify_tls),
        )
