"""Observability setup - Logfire configuration.

The proxy logs through logfire.info/warn/error/debug directly rather than
Python's logging module, so every message lands inside the span of the
request it belongs to. With httpx instrumented, each upstream call gets a
child span of `hookproxy.forward` and carries the trace to the target in a
`traceparent` header.
"""

from typing import Literal

import httpx
import logfire


def configure(
    service_name: str = "hookproxy",
    debug: bool = False,
    send_to_logfire: bool | Literal["if-token-present"] = "if-token-present",
    instrument: bool = True,
) -> None:
    """Configure Logfire for observability.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console. Default False (quiet mode).
        send_to_logfire: Export to Logfire; by default only when a token is set.
        instrument: Instrument every httpx client for upstream spans.
    """
    logfire.configure(
        service_name=service_name,
        distributed_tracing=True,
        scrubbing=False,  # Would redact proxied headers and bodies
        send_to_logfire=send_to_logfire,
        console=None if debug else False,  # Only show console output in debug mode
    )

    if instrument:
        instrument_upstream()


def instrument_upstream(http_client: httpx.AsyncClient | None = None) -> None:
    """Give upstream calls their own spans, with trace propagation.

    Args:
        http_client: Only instrument this client (e.g. the one handed to
            HookProxy). Default: every httpx client.
    """
    logfire.instrument_httpx(http_client)
