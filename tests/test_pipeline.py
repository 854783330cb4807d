"""Tests for the response pipeline: passthrough, interception, finalization."""

import asyncio
import json

import pytest
from multidict import CIMultiDict

from hookproxy import (
    ClientDisconnected,
    HookSet,
    InterceptError,
    ResponsePipeline,
    UpstreamResponse,
    callback_intercept,
)


def upstream_response(status=200, headers=None, body=b"", decoded=False):
    return UpstreamResponse(status=status, headers=CIMultiDict(headers or []), body=body, decoded=decoded)


@pytest.fixture
def pipeline():
    return ResponsePipeline()


class TestPassthrough:
    """No intercept hook configured."""

    async def test_body_is_byte_identical(self, pipeline, make_inbound):
        body = bytes(range(256)) * 4
        upstream = upstream_response(headers=[("Content-Type", "application/octet-stream")], body=body)

        response = await pipeline.process(upstream, make_inbound(), HookSet())

        assert response.body == body
        assert response.headers["Content-Type"] == "application/octet-stream"
        assert response.headers["Content-Length"] == str(len(body))

    @pytest.mark.parametrize("status", [200, 401, 404, 500])
    async def test_status_passes_through(self, pipeline, make_inbound, status):
        response = await pipeline.process(upstream_response(status, body=b"x"), make_inbound(), HookSet())
        assert response.status == status

    async def test_not_modified_has_no_body(self, pipeline, make_inbound):
        upstream = upstream_response(304, headers=[("ETag", '"abc"'), ("Content-Length", "12")])

        response = await pipeline.process(upstream, make_inbound(), HookSet())

        assert response.status == 304
        assert response.body == b""
        assert "Content-Length" not in response.headers
        assert response.headers["ETag"] == '"abc"'

    async def test_set_cookie_lines_kept_verbatim(self, pipeline, make_inbound):
        upstream = upstream_response(
            headers=[
                ("Set-Cookie", "mycookie=value; Path=/"),
                ("Set-Cookie", "other=2; HttpOnly"),
            ],
            body=b"{}",
        )

        response = await pipeline.process(upstream, make_inbound(), HookSet())

        assert response.headers.getall("Set-Cookie") == ["mycookie=value; Path=/", "other=2; HttpOnly"]

    async def test_hop_by_hop_headers_dropped(self, pipeline, make_inbound):
        upstream = upstream_response(
            headers=[
                ("Connection", "close"),
                ("Transfer-Encoding", "chunked"),
                ("Content-Encoding", "gzip"),
                ("X-Kept", "yes"),
            ],
            body=b"\x1f\x8b compressed",
        )

        response = await pipeline.process(upstream, make_inbound(), HookSet())

        assert list(response.headers.keys()) == ["Content-Encoding", "X-Kept", "Content-Length"]
        assert response.headers["Content-Length"] == str(len(b"\x1f\x8b compressed"))

    async def test_content_encoding_dropped_once_decoded(self, pipeline, make_inbound):
        upstream = upstream_response(
            headers=[("Content-Encoding", "gzip"), ("X-Kept", "yes")],
            body=b"decoded",
            decoded=True,
        )

        response = await pipeline.process(upstream, make_inbound(), HookSet())

        assert list(response.headers.keys()) == ["X-Kept", "Content-Length"]
        assert response.body == b"decoded"

    async def test_head_keeps_upstream_length(self, pipeline, make_inbound):
        upstream = upstream_response(headers=[("Content-Length", "1234")])

        response = await pipeline.process(upstream, make_inbound("HEAD"), HookSet())

        assert response.headers["Content-Length"] == "1234"
        assert response.body == b""


class TestIntercept:
    """Intercept hooks replacing the body."""

    async def test_json_transform_recomputes_length(self, pipeline, make_inbound):
        upstream = upstream_response(
            headers=[("Content-Type", "application/json"), ("X-Upstream", "1")],
            body=b'{"origin": "1.2.3.4"}',
        )

        async def intercept(body, inbound, response):
            data = json.loads(body)
            data["intercepted"] = True
            return json.dumps(data)

        response = await pipeline.process(upstream, make_inbound(), HookSet(intercept=intercept))

        assert json.loads(response.body) == {"origin": "1.2.3.4", "intercepted": True}
        assert response.headers["Content-Length"] == str(len(response.body))
        assert response.headers["X-Upstream"] == "1"

    async def test_sync_hook_returning_bytes(self, pipeline, make_inbound):
        upstream = upstream_response(body=b"<p>Oh, hi</p>")

        def intercept(body, inbound, response):
            return body.replace(b"Oh", b"<strong>Hey</strong>")

        response = await pipeline.process(upstream, make_inbound(), HookSet(intercept=intercept))

        assert response.body == b"<p><strong>Hey</strong>, hi</p>"
        assert response.headers["Content-Length"] == str(len(b"<p><strong>Hey</strong>, hi</p>"))

    async def test_hook_receives_full_body_and_inbound(self, pipeline, make_inbound):
        seen = {}
        inbound = make_inbound("GET", "/ip")

        def intercept(body, request, response):
            seen["body"] = body
            seen["request"] = request
            seen["status"] = response.status
            return body

        await pipeline.process(upstream_response(201, body=b"a" * 5000), inbound, HookSet(intercept=intercept))

        assert seen == {"body": b"a" * 5000, "request": inbound, "status": 201}

    async def test_hook_header_changes_survive(self, pipeline, make_inbound):
        upstream = upstream_response(headers=[("Content-Type", "text/plain")], body=b"hello")

        def intercept(body, inbound, response):
            response.headers["Content-Type"] = "text/html"
            response.headers["X-Intercepted"] = "1"
            return b"<b>hello</b>"

        response = await pipeline.process(upstream, make_inbound(), HookSet(intercept=intercept))

        assert response.headers["Content-Type"] == "text/html"
        assert response.headers["X-Intercepted"] == "1"
        assert response.headers["Content-Length"] == "12"

    async def test_hook_exception_becomes_intercept_error(self, pipeline, make_inbound):
        async def intercept(body, inbound, response):
            raise ValueError("bad json")

        with pytest.raises(InterceptError) as excinfo:
            await pipeline.process(upstream_response(body=b"x"), make_inbound(), HookSet(intercept=intercept))

        assert isinstance(excinfo.value.__cause__, ValueError)

    async def test_hook_returning_wrong_type(self, pipeline, make_inbound):
        with pytest.raises(InterceptError):
            await pipeline.process(
                upstream_response(body=b"x"),
                make_inbound(),
                HookSet(intercept=lambda body, inbound, response: {"not": "bytes"}),
            )

    async def test_disconnected_caller_skips_hook(self, pipeline, make_inbound):
        calls = []

        def intercept(body, inbound, response):
            calls.append(body)
            return body

        inbound = make_inbound(is_disconnected=lambda: True)
        with pytest.raises(ClientDisconnected):
            await pipeline.process(upstream_response(body=b"x"), inbound, HookSet(intercept=intercept))

        assert calls == []


class TestCallbackIntercept:
    """Continuation-style hooks through callback_intercept."""

    async def test_done_with_body(self, pipeline, make_inbound):
        def intercept(body, inbound, response, done):
            data = json.loads(body.decode("utf-8"))
            data["intercepted"] = True
            done(None, json.dumps(data))

        response = await pipeline.process(
            upstream_response(body=b'{"a": 1}'), make_inbound(), HookSet(intercept=callback_intercept(intercept))
        )

        assert json.loads(response.body) == {"a": 1, "intercepted": True}

    async def test_done_later_from_the_loop(self, pipeline, make_inbound):
        def intercept(body, inbound, response, done):
            asyncio.get_running_loop().call_later(0.01, done, None, body.upper())

        response = await pipeline.process(
            upstream_response(body=b"later"), make_inbound(), HookSet(intercept=callback_intercept(intercept))
        )

        assert response.body == b"LATER"

    async def test_done_with_error(self, pipeline, make_inbound):
        def intercept(body, inbound, response, done):
            done(RuntimeError("upstream said no"), None)

        with pytest.raises(InterceptError, match="upstream said no"):
            await pipeline.process(
                upstream_response(body=b"x"), make_inbound(), HookSet(intercept=callback_intercept(intercept))
            )

    async def test_done_with_non_exception_error(self, pipeline, make_inbound):
        def intercept(body, inbound, response, done):
            done("nope")

        with pytest.raises(InterceptError, match="nope"):
            await pipeline.process(
                upstream_response(body=b"x"), make_inbound(), HookSet(intercept=callback_intercept(intercept))
            )

    async def test_second_done_is_ignored(self, pipeline, make_inbound):
        def intercept(body, inbound, response, done):
            done(None, b"first")
            done(None, b"second")
            done(RuntimeError("late"), None)

        response = await pipeline.process(
            upstream_response(body=b"x"), make_inbound(), HookSet(intercept=callback_intercept(intercept))
        )

        assert response.body == b"first"


class TestStaging:
    """Host-staged status and headers."""

    async def test_staged_status_wins(self, pipeline, make_inbound):
        inbound = make_inbound(staged_status=202)
        response = await pipeline.process(upstream_response(404, body=b"x"), inbound, HookSet())
        assert response.status == 202

    async def test_upstream_status_used_when_nothing_staged(self, pipeline, make_inbound):
        response = await pipeline.process(upstream_response(418, body=b"x"), make_inbound(), HookSet())
        assert response.status == 418

    async def test_staged_headers_override(self, pipeline, make_inbound):
        inbound = make_inbound(staged_headers={"Cache-Control": "no-store", "X-Host": "1"})
        upstream = upstream_response(headers=[("cache-control", "max-age=60"), ("X-Up", "1")], body=b"x")

        response = await pipeline.process(upstream, inbound, HookSet())

        assert response.headers.getall("Cache-Control") == ["no-store"]
        assert response.headers["X-Host"] == "1"
        assert response.headers["X-Up"] == "1"
