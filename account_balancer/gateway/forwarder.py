from __future__ import annotations

import logging
import math
import time
from collections.abc import Collection
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable

import httpx
from starlette.datastructures import Headers
from starlette.requests import ClientDisconnect

from account_balancer.errors import (
    ClientDisconnected,
    ForwardError,
    ForwardErrorKind,
    UpstreamStreamInterrupted,
)
from account_balancer.gateway.context import RequestContext
from account_balancer.registry import AccountSnapshot

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Stripped from inbound requests: the account credential replaces them.
CLIENT_CREDENTIAL_HEADERS = {"authorization", "x-api-key"}

RATE_LIMIT_RESET_HEADERS = (
    "anthropic-ratelimit-unified-reset",
    "anthropic-ratelimit-requests-reset",
    "anthropic-ratelimit-tokens-reset",
    "anthropic-ratelimit-input-tokens-reset",
    "anthropic-ratelimit-output-tokens-reset",
)

UNAUTHORIZED_STATUSES = {401, 403}

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _connection_tokens(headers: Headers) -> set[str]:
    tokens: set[str] = set()
    for value in headers.getlist("connection"):
        for token in value.split(","):
            normalized = token.strip().lower()
            if normalized:
                tokens.add(normalized)
    return tokens


def build_upstream_headers(
    incoming_headers: Headers,
    account: AccountSnapshot,
) -> list[tuple[str, str]]:
    dropped = HOP_BY_HOP_HEADERS | CLIENT_CREDENTIAL_HEADERS | {"host"}
    dropped |= _connection_tokens(incoming_headers)
    overridden = {name.lower() for name in account.headers}
    headers: list[tuple[str, str]] = []
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in dropped or lower in overridden:
            continue
        headers.append((name, value))

    for name, value in account.headers.items():
        headers.append((name, value))

    if account.auth_scheme == "x-api-key":
        headers.append(("x-api-key", account.credential))
    else:
        headers.append(("Authorization", f"Bearer {account.credential}"))
    return headers


def build_upstream_url(base_url: str, path: str, query: str = "") -> str:
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    dropped = HOP_BY_HOP_HEADERS | {"content-length"}
    for value in headers.get_list("connection"):
        dropped |= {token.strip().lower() for token in value.split(",") if token.strip()}
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in dropped
    ]


def _parse_retry_after_seconds(headers: httpx.Headers, now: float) -> float | None:
    raw = headers.get("retry-after")
    if not raw:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
        if math.isfinite(seconds) and seconds >= 0:
            return seconds
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
        if retry_dt.tzinfo is None:
            retry_dt = retry_dt.replace(tzinfo=timezone.utc)
        return max(0.0, retry_dt.timestamp() - now)
    except (TypeError, ValueError, IndexError):
        pass

    return None


def _parse_reset_timestamp(value: str, now: float) -> float | None:
    normalized = value.strip()
    if not normalized:
        return None
    try:
        numeric = float(normalized)
    except ValueError:
        numeric = None
    if numeric is not None:
        if not math.isfinite(numeric):
            return None
        # Large values are epoch seconds, small ones a delay.
        return numeric if numeric > 1_000_000_000 else now + max(0.0, numeric)
    try:
        parsed = datetime.fromisoformat(normalized.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_rate_limit_reset(
    headers: httpx.Headers,
    *,
    now: float,
    default_cooldown_seconds: float,
    max_cooldown_seconds: float = 3600.0,
) -> float:
    latest = now + max(0.0, max_cooldown_seconds)
    retry_after = _parse_retry_after_seconds(headers, now)
    if retry_after is not None:
        return min(now + retry_after, latest)

    resets: list[float] = []
    for name in RATE_LIMIT_RESET_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        parsed = _parse_reset_timestamp(raw, now)
        if parsed is not None and parsed > now:
            resets.append(parsed)
    if resets:
        return min(max(resets), latest)
    return min(now + max(0.0, default_cooldown_seconds), latest)


def classify_upstream_status(
    *,
    account_id: str,
    status_code: int,
    headers: httpx.Headers,
    now: float,
    failover_statuses: Collection[int],
    default_cooldown_seconds: float,
    max_cooldown_seconds: float = 3600.0,
) -> ForwardError | None:
    if status_code in UNAUTHORIZED_STATUSES:
        return ForwardError(
            ForwardErrorKind.UNAUTHORIZED,
            account_id=account_id,
            status_code=status_code,
            detail="upstream rejected the account credential",
        )
    if status_code == 429:
        return ForwardError(
            ForwardErrorKind.RATE_LIMITED,
            account_id=account_id,
            status_code=status_code,
            reset_at=parse_rate_limit_reset(
                headers,
                now=now,
                default_cooldown_seconds=default_cooldown_seconds,
                max_cooldown_seconds=max_cooldown_seconds,
            ),
            detail="upstream rate limit reached",
        )
    if status_code in failover_statuses:
        return ForwardError(
            ForwardErrorKind.NETWORK_ERROR,
            account_id=account_id,
            status_code=status_code,
            detail="upstream unavailable",
            error_type=f"http_{status_code}",
        )
    return None


class StreamEnd(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


StreamFinishCallback = Callable[
    ["StreamedResponse", StreamEnd, UpstreamStreamInterrupted | None], None
]


class StreamedResponse:
    """Relays one upstream response body chunk by chunk.

    The first chunk is read before the response is handed to the client
    (``prime``), so failures up to that point are still pre-flight. After
    that, an upstream failure is terminal and surfaces as
    ``UpstreamStreamInterrupted``.
    """

    def __init__(
        self,
        *,
        upstream: httpx.Response,
        account_id: str,
        request_id: str,
        on_finish: StreamFinishCallback | None = None,
    ) -> None:
        self._upstream = upstream
        self.account_id = account_id
        self.request_id = request_id
        self.status_code = upstream.status_code
        self.headers = filter_response_headers(upstream.headers)
        self.bytes_relayed = 0
        self.end: StreamEnd | None = None
        self._on_finish = on_finish
        self._iterator: AsyncIterator[bytes] = upstream.aiter_raw()
        self._primed: bytes | None = None
        self._eof = False

    @property
    def started(self) -> bool:
        return self.bytes_relayed > 0

    @property
    def finished(self) -> bool:
        return self.end is not None

    async def prime(self) -> None:
        try:
            self._primed = await self._next_chunk()
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            await self._upstream.aclose()
            raise ForwardError(
                ForwardErrorKind.NETWORK_ERROR,
                account_id=self.account_id,
                status_code=self.status_code,
                detail=details["error"],
                error_type=details["error_type"],
            ) from exc

    async def _next_chunk(self) -> bytes | None:
        while True:
            try:
                chunk = await anext(self._iterator)
            except StopAsyncIteration:
                self._eof = True
                return None
            if chunk:
                return chunk

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            if self._primed is not None:
                chunk, self._primed = self._primed, None
                self.bytes_relayed += len(chunk)
                yield chunk
            while not self._eof:
                try:
                    chunk = await self._next_chunk()
                except httpx.RequestError as exc:
                    details = _request_error_details(exc)
                    error = UpstreamStreamInterrupted(
                        account_id=self.account_id,
                        detail=details["error"],
                        bytes_relayed=self.bytes_relayed,
                        error_type=details["error_type"],
                    )
                    self._finish(StreamEnd.INTERRUPTED, error)
                    raise error from exc
                if chunk is None:
                    break
                self.bytes_relayed += len(chunk)
                yield chunk
            self._finish(StreamEnd.COMPLETED, None)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self.finished:
            self._finish(StreamEnd.CANCELLED, None)
        await self._upstream.aclose()

    def _finish(
        self, end: StreamEnd, error: UpstreamStreamInterrupted | None
    ) -> None:
        if self.end is not None:
            return
        self.end = end
        if self._on_finish is not None:
            self._on_finish(self, end, error)


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except ImportError:
        return False
    return True


def build_upstream_client(
    *,
    connect_timeout_seconds: float,
    idle_timeout_seconds: float,
    pool_timeout_seconds: float,
    max_connections: int = 512,
    max_keepalive_connections: int = 128,
    http2_enabled: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    # No total timeout: streams may live for a long time. Read/write act as
    # the idle timeout between bytes.
    idle_timeout = max(0.1, float(idle_timeout_seconds))
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(connect_timeout_seconds)),
            read=idle_timeout,
            write=idle_timeout,
            pool=max(0.1, float(pool_timeout_seconds)),
        ),
        limits=httpx.Limits(
            max_connections=max(1, int(max_connections)),
            max_keepalive_connections=max(0, int(max_keepalive_connections)),
        ),
        http2=http2_enabled and transport is None and _can_enable_http2(),
        transport=transport,
        follow_redirects=False,
    )
    # Inbound accept-encoding passes through untouched; bodies are relayed raw.
    client.headers.pop("accept-encoding", None)
    return client


class UpstreamForwarder:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        failover_statuses: Collection[int] = (502, 503, 504, 529),
        default_rate_limit_cooldown_seconds: float = 60.0,
        max_rate_limit_cooldown_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.failover_statuses = set(failover_statuses)
        self._default_cooldown_seconds = default_rate_limit_cooldown_seconds
        self._max_cooldown_seconds = max_rate_limit_cooldown_seconds
        self._clock = clock

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        context: RequestContext,
        account: AccountSnapshot,
        *,
        on_finish: StreamFinishCallback | None = None,
    ) -> StreamedResponse:
        request = self.client.build_request(
            method=context.method,
            url=build_upstream_url(account.base_url, context.path, context.query),
            headers=build_upstream_headers(context.headers, account),
            content=context.body.stream() if context.body.has_body else None,
        )
        attempt_started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            raise ForwardError(
                ForwardErrorKind.NETWORK_ERROR,
                account_id=account.account_id,
                detail=details["error"],
                error_type=details["error_type"],
            ) from exc
        except ClientDisconnect as exc:
            raise ClientDisconnected(
                f"client disconnected while uploading request {context.request_id}"
            ) from exc

        logger.info(
            "proxy_upstream_connected request_id=%s account=%s connect_ms=%.2f status=%d",
            context.request_id,
            account.account_id,
            (time.perf_counter() - attempt_started) * 1000.0,
            upstream.status_code,
        )
        error = classify_upstream_status(
            account_id=account.account_id,
            status_code=upstream.status_code,
            headers=upstream.headers,
            now=self._clock(),
            failover_statuses=self.failover_statuses,
            default_cooldown_seconds=self._default_cooldown_seconds,
            max_cooldown_seconds=self._max_cooldown_seconds,
        )
        if error is not None:
            await upstream.aclose()
            raise error

        streamed = StreamedResponse(
            upstream=upstream,
            account_id=account.account_id,
            request_id=context.request_id,
            on_finish=on_finish,
        )
        try:
            await streamed.prime()
        except BaseException:
            await upstream.aclose()
            raise
        return streamed
