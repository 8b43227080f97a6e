from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import httpx
import pytest
from starlette.datastructures import Headers

from account_balancer.errors import ForwardError, ForwardErrorKind, UpstreamStreamInterrupted
from account_balancer.gateway.body import ReplayableBody
from account_balancer.gateway.context import ConnectionState, RequestContext
from account_balancer.gateway.forwarder import (
    StreamEnd,
    StreamedResponse,
    UpstreamForwarder,
    build_upstream_client,
    build_upstream_headers,
    build_upstream_url,
    classify_upstream_status,
    filter_response_headers,
    parse_rate_limit_reset,
)
from account_balancer.registry import AccountSnapshot, HealthState


def _account(
    account_id: str = "acct-a",
    *,
    auth_scheme: str = "x-api-key",
    headers: dict[str, str] | None = None,
) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=account_id,
        base_url=f"http://{account_id}.test",
        auth_scheme=auth_scheme,
        credential=f"key-{account_id}",
        headers=headers or {},
        health=HealthState.HEALTHY,
        rate_limit_reset_at=None,
        last_used_at=0.0,
        in_flight=0,
        health_changed_at=0.0,
        consecutive_failures=0,
    )


async def _source(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def _context(
    *,
    method: str = "POST",
    path: str = "/v1/messages",
    query: str = "",
    headers: dict[str, str] | None = None,
    body: list[bytes] | None = None,
) -> RequestContext:
    context = RequestContext(
        method=method,
        path=path,
        query=query,
        headers=Headers(headers=headers or {}),
        body=ReplayableBody(
            _source(body) if body is not None else None, max_replay_bytes=1024
        ),
    )
    context.transition(ConnectionState.HEADERS_PARSED)
    return context


class _GatedStream(httpx.AsyncByteStream):
    def __init__(
        self,
        chunks: list[bytes],
        *,
        gate: asyncio.Event | None = None,
        fail_after: int | None = None,
    ) -> None:
        self._chunks = chunks
        self._gate = gate
        self._fail_after = fail_after
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            if index == self._fail_after:
                raise httpx.ReadError("upstream reset")
            if index == 1 and self._gate is not None:
                await self._gate.wait()
            yield chunk
        if self._fail_after is not None and self._fail_after >= len(self._chunks):
            raise httpx.ReadError("upstream reset")

    async def aclose(self) -> None:
        self.closed = True


def _forwarder(handler: Any, **kwargs: Any) -> UpstreamForwarder:
    client = build_upstream_client(
        connect_timeout_seconds=1.0,
        idle_timeout_seconds=5.0,
        pool_timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )
    return UpstreamForwarder(client, **kwargs)


def test_build_upstream_headers_replaces_client_credentials() -> None:
    incoming = Headers(
        raw=[
            (b"host", b"balancer.local"),
            (b"authorization", b"Bearer client-token"),
            (b"x-api-key", b"client-key"),
            (b"connection", b"keep-alive, x-session-hint"),
            (b"x-session-hint", b"abc"),
            (b"keep-alive", b"timeout=5"),
            (b"transfer-encoding", b"chunked"),
            (b"content-type", b"application/json"),
            (b"content-length", b"12"),
            (b"anthropic-version", b"2023-01-01"),
            (b"anthropic-beta", b"tools"),
        ]
    )
    account = _account(headers={"anthropic-version": "2023-06-01"})

    headers = build_upstream_headers(incoming, account)
    names = [name.lower() for name, _ in headers]

    assert "host" not in names
    assert "authorization" not in names
    assert "connection" not in names
    assert "x-session-hint" not in names
    assert "keep-alive" not in names
    assert "transfer-encoding" not in names
    assert ("content-type", "application/json") in headers
    assert ("content-length", "12") in headers
    assert ("anthropic-beta", "tools") in headers
    assert ("anthropic-version", "2023-06-01") in headers
    assert names.count("anthropic-version") == 1
    assert ("x-api-key", "key-acct-a") in headers
    assert names.count("x-api-key") == 1


def test_build_upstream_headers_bearer_scheme() -> None:
    headers = build_upstream_headers(Headers(headers={}), _account(auth_scheme="bearer"))

    assert headers == [("Authorization", "Bearer key-acct-a")]


def test_build_upstream_url_appends_path_and_query() -> None:
    assert (
        build_upstream_url("https://api.example.com/", "/v1/messages", "beta=true&x=1")
        == "https://api.example.com/v1/messages?beta=true&x=1"
    )
    assert build_upstream_url("https://api.example.com/base", "/v1/models") == (
        "https://api.example.com/base/v1/models"
    )


def test_filter_response_headers_drops_hop_by_hop_and_length() -> None:
    headers = httpx.Headers(
        [
            ("content-type", "text/event-stream"),
            ("content-length", "42"),
            ("transfer-encoding", "chunked"),
            ("connection", "close"),
            ("set-cookie", "a=1"),
            ("set-cookie", "b=2"),
            ("request-id", "req_123"),
        ]
    )

    assert filter_response_headers(headers) == [
        ("content-type", "text/event-stream"),
        ("set-cookie", "a=1"),
        ("set-cookie", "b=2"),
        ("request-id", "req_123"),
    ]


def test_parse_rate_limit_reset_numeric_retry_after() -> None:
    headers = httpx.Headers({"Retry-After": "12"})

    assert parse_rate_limit_reset(headers, now=1_000.0, default_cooldown_seconds=60.0) == 1_012.0


def test_parse_rate_limit_reset_http_date_retry_after() -> None:
    now = datetime.now(timezone.utc)
    future = now + timedelta(seconds=8)
    headers = httpx.Headers({"Retry-After": future.strftime("%a, %d %b %Y %H:%M:%S GMT")})

    reset_at = parse_rate_limit_reset(
        headers, now=now.timestamp(), default_cooldown_seconds=60.0
    )

    assert now.timestamp() + 6.5 <= reset_at <= now.timestamp() + 8.5


def test_parse_rate_limit_reset_uses_latest_anthropic_reset() -> None:
    now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    headers = httpx.Headers(
        {
            "anthropic-ratelimit-requests-reset": "2026-01-01T12:00:30Z",
            "anthropic-ratelimit-tokens-reset": "2026-01-01T12:01:00Z",
        }
    )

    reset_at = parse_rate_limit_reset(
        headers, now=now.timestamp(), default_cooldown_seconds=5.0
    )

    assert reset_at == pytest.approx(now.timestamp() + 60.0)


def test_parse_rate_limit_reset_epoch_and_default() -> None:
    epoch_headers = httpx.Headers({"anthropic-ratelimit-unified-reset": "1767270000"})
    assert parse_rate_limit_reset(
        epoch_headers, now=1_767_269_000.0, default_cooldown_seconds=60.0
    ) == 1_767_270_000.0

    assert parse_rate_limit_reset(
        httpx.Headers({"Retry-After": "soon"}), now=100.0, default_cooldown_seconds=60.0
    ) == 160.0


def test_parse_rate_limit_reset_ignores_infinite_and_caps_far_resets() -> None:
    assert parse_rate_limit_reset(
        httpx.Headers({"Retry-After": "inf"}), now=100.0, default_cooldown_seconds=60.0
    ) == 160.0
    assert parse_rate_limit_reset(
        httpx.Headers({"Retry-After": "1e400"}), now=100.0, default_cooldown_seconds=60.0
    ) == 160.0
    assert parse_rate_limit_reset(
        httpx.Headers({"anthropic-ratelimit-tokens-reset": "1e400"}),
        now=100.0,
        default_cooldown_seconds=60.0,
    ) == 160.0

    far = httpx.Headers({"Retry-After": "99999999"})
    assert parse_rate_limit_reset(
        far, now=100.0, default_cooldown_seconds=60.0, max_cooldown_seconds=600.0
    ) == 700.0
    far_epoch = httpx.Headers({"anthropic-ratelimit-unified-reset": "9999999999"})
    assert parse_rate_limit_reset(
        far_epoch, now=1_767_269_000.0, default_cooldown_seconds=60.0
    ) == 1_767_269_000.0 + 3600.0


def test_classify_upstream_status() -> None:
    def classify(status_code: int, headers: dict[str, str] | None = None) -> ForwardError | None:
        return classify_upstream_status(
            account_id="acct-a",
            status_code=status_code,
            headers=httpx.Headers(headers or {}),
            now=100.0,
            failover_statuses={502, 503, 504, 529},
            default_cooldown_seconds=60.0,
        )

    assert classify(200) is None
    assert classify(400) is None
    assert classify(500) is None
    unauthorized = classify(401)
    assert unauthorized is not None and unauthorized.kind == ForwardErrorKind.UNAUTHORIZED
    forbidden = classify(403)
    assert forbidden is not None and forbidden.kind == ForwardErrorKind.UNAUTHORIZED
    limited = classify(429, {"retry-after": "60"})
    assert limited is not None
    assert limited.kind == ForwardErrorKind.RATE_LIMITED
    assert limited.reset_at == 160.0
    overloaded = classify(529)
    assert overloaded is not None
    assert overloaded.kind == ForwardErrorKind.NETWORK_ERROR
    assert overloaded.error_type == "http_529"


def test_forward_sends_body_and_credentials_to_account_url() -> None:
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["method"] = request.method
        seen["body"] = request.content
        seen["x-api-key"] = request.headers.get("x-api-key")
        seen["accept-encoding"] = request.headers.get("accept-encoding")
        return httpx.Response(200, content=b'{"ok":true}', headers={"content-type": "application/json"})

    async def _run() -> tuple[bytes, StreamedResponse]:
        forwarder = _forwarder(handler)
        try:
            context = _context(
                query="beta=true",
                headers={"x-api-key": "client", "content-length": "7"},
                body=[b"{", b'"a":1', b"}"],
            )
            streamed = await forwarder.forward(context, _account())
            payload = b"".join([chunk async for chunk in streamed.aiter_bytes()])
            return payload, streamed
        finally:
            await forwarder.close()

    payload, streamed = asyncio.run(_run())

    assert payload == b'{"ok":true}'
    assert streamed.status_code == 200
    assert streamed.end == StreamEnd.COMPLETED
    assert ("content-type", "application/json") in streamed.headers
    assert seen == {
        "url": "http://acct-a.test/v1/messages?beta=true",
        "method": "POST",
        "body": b'{"a":1}',
        "x-api-key": "key-acct-a",
        "accept-encoding": None,
    }


def test_forward_maps_connection_failure_to_network_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> ForwardError:
        forwarder = _forwarder(handler)
        try:
            with pytest.raises(ForwardError) as exc_info:
                await forwarder.forward(_context(method="GET"), _account())
            return exc_info.value
        finally:
            await forwarder.close()

    error = asyncio.run(_run())

    assert error.kind == ForwardErrorKind.NETWORK_ERROR
    assert error.error_type == "ConnectError"
    assert error.account_id == "acct-a"


def test_forward_closes_rate_limited_response() -> None:
    stream = _GatedStream([b'{"error":"rate_limit"}'])

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "60"}, stream=stream)

    async def _run() -> ForwardError:
        forwarder = _forwarder(handler, clock=lambda: 1_000.0)
        try:
            with pytest.raises(ForwardError) as exc_info:
                await forwarder.forward(_context(method="GET"), _account())
            return exc_info.value
        finally:
            await forwarder.close()

    error = asyncio.run(_run())

    assert error.kind == ForwardErrorKind.RATE_LIMITED
    assert error.reset_at == 1_060.0
    assert stream.closed is True


def test_forward_relays_other_errors_unchanged() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, content=b'{"error":"bad request"}')

    async def _run() -> tuple[int, bytes]:
        forwarder = _forwarder(handler)
        try:
            streamed = await forwarder.forward(_context(method="GET"), _account())
            body = b"".join([chunk async for chunk in streamed.aiter_bytes()])
            return streamed.status_code, body
        finally:
            await forwarder.close()

    assert asyncio.run(_run()) == (400, b'{"error":"bad request"}')


def test_streamed_response_relays_chunks_incrementally_in_order() -> None:
    async def _run() -> list[bytes]:
        gate = asyncio.Event()
        stream = _GatedStream([b"event: one\n\n", b"event: two\n\n", b"event: three\n\n"], gate=gate)

        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=stream)

        forwarder = _forwarder(handler)
        try:
            streamed = await forwarder.forward(_context(method="GET"), _account())
            iterator = streamed.aiter_bytes().__aiter__()
            received = [await anext(iterator)]
            # The second upstream chunk is still held back, yet the first one is out.
            assert gate.is_set() is False
            gate.set()
            received.extend([chunk async for chunk in iterator])
            return received
        finally:
            await forwarder.close()

    assert asyncio.run(_run()) == [b"event: one\n\n", b"event: two\n\n", b"event: three\n\n"]


def test_streamed_response_reports_mid_stream_interruption() -> None:
    finished: list[tuple[StreamEnd, UpstreamStreamInterrupted | None]] = []
    stream = _GatedStream([b"partial-1", b"partial-2"], fail_after=2)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    async def _run() -> list[bytes]:
        forwarder = _forwarder(handler)
        received: list[bytes] = []
        try:
            streamed = await forwarder.forward(
                _context(method="GET"),
                _account(),
                on_finish=lambda relay, end, error: finished.append((end, error)),
            )
            with pytest.raises(UpstreamStreamInterrupted) as exc_info:
                async for chunk in streamed.aiter_bytes():
                    received.append(chunk)
            assert exc_info.value.bytes_relayed == len(b"partial-1partial-2")
            return received
        finally:
            await forwarder.close()

    assert asyncio.run(_run()) == [b"partial-1", b"partial-2"]
    assert len(finished) == 1
    assert finished[0][0] == StreamEnd.INTERRUPTED
    assert finished[0][1] is not None
    assert finished[0][1].kind == ForwardErrorKind.NETWORK_ERROR
    assert stream.closed is True


def test_failure_before_first_chunk_is_a_forward_error() -> None:
    stream = _GatedStream([b"never"], fail_after=0)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    async def _run() -> ForwardError:
        forwarder = _forwarder(handler)
        try:
            with pytest.raises(ForwardError) as exc_info:
                await forwarder.forward(_context(method="GET"), _account())
            return exc_info.value
        finally:
            await forwarder.close()

    error = asyncio.run(_run())

    assert not isinstance(error, UpstreamStreamInterrupted)
    assert error.kind == ForwardErrorKind.NETWORK_ERROR
    assert stream.closed is True


def test_closing_unfinished_stream_counts_as_cancellation() -> None:
    finished: list[StreamEnd] = []
    stream = _GatedStream([b"one", b"two"], gate=asyncio.Event())

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    async def _run() -> None:
        forwarder = _forwarder(handler)
        try:
            streamed = await forwarder.forward(
                _context(method="GET"),
                _account(),
                on_finish=lambda relay, end, error: finished.append(end),
            )
            await streamed.aclose()
            await streamed.aclose()
        finally:
            await forwarder.close()

    asyncio.run(_run())

    assert finished == [StreamEnd.CANCELLED]
    assert stream.closed is True
