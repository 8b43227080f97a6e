from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from account_balancer.config import load_balancer_config
from account_balancer.errors import (
    AllAccountsExhausted,
    ClientDisconnected,
    RequestBodyNotReplayable,
)
from account_balancer.gateway.audit import JsonlAuditLogger
from account_balancer.gateway.body import ReplayableBody
from account_balancer.gateway.context import ConnectionState, RequestContext
from account_balancer.gateway.failover import FailoverController
from account_balancer.gateway.forwarder import (
    StreamedResponse,
    UpstreamForwarder,
    build_upstream_client,
)
from account_balancer.registry import AccountRegistry, HealthState
from account_balancer.runtime.health_reconciler import HealthReconciler
from account_balancer.runtime.proxy_metrics import ProxyMetricsAccumulator
from account_balancer.settings import Settings, get_settings

app = FastAPI(
    title="Account Balancer",
    description="Reverse proxy that spreads API traffic across upstream accounts with failover.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# Non-standard status (nginx convention) for a client that went away first.
CLIENT_CLOSED_REQUEST_STATUS = 499


class RelayStreamingResponse(StreamingResponse):
    """Streams an upstream body and always releases it, even if never iterated."""

    def __init__(
        self,
        relay: StreamedResponse,
        *,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.relay = relay
        super().__init__(relay.aiter_bytes(), status_code=relay.status_code)
        # Raw list keeps repeated upstream headers such as set-cookie.
        self.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in [*relay.headers, *(extra_headers or {}).items()]
        ]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.relay.aclose()


def configure_balancer(
    state: Any,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    balancer_config = load_balancer_config(settings.accounts_config_path)
    audit_logger = JsonlAuditLogger(
        path=settings.balancer_audit_log_path,
        enabled=settings.balancer_audit_log_enabled,
    )
    registry = AccountRegistry(balancer_config.accounts, event_hook=audit_logger.emit)
    proxy_metrics = ProxyMetricsAccumulator()
    forwarder = UpstreamForwarder(
        build_upstream_client(
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            idle_timeout_seconds=settings.upstream_idle_timeout_seconds,
            pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive_connections,
            http2_enabled=settings.upstream_http2_enabled,
            transport=transport,
        ),
        failover_statuses=balancer_config.failover_statuses,
        default_rate_limit_cooldown_seconds=settings.rate_limit_default_cooldown_seconds,
        max_rate_limit_cooldown_seconds=settings.rate_limit_max_cooldown_seconds,
    )
    state.settings = settings
    state.balancer_config = balancer_config
    state.audit_logger = audit_logger
    state.registry = registry
    state.proxy_metrics = proxy_metrics
    state.forwarder = forwarder
    state.failover_controller = FailoverController(
        registry=registry,
        forwarder=forwarder,
        metrics=proxy_metrics,
        event_hook=audit_logger.emit,
    )
    state.health_reconciler = HealthReconciler(
        registry=registry,
        logger=logger,
        interval_seconds=settings.health_reconcile_interval_seconds,
        unauthorized_cooldown_seconds=settings.unauthorized_cooldown_seconds,
        unreachable_cooldown_seconds=settings.unreachable_cooldown_seconds,
        accounts_config_path=settings.accounts_config_path,
        reload_enabled=settings.accounts_reload_enabled,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    configure_balancer(
        app.state,
        settings,
        transport=getattr(app.state, "upstream_transport", None),
    )
    await app.state.health_reconciler.start()
    logger.info(
        (
            "startup complete accounts_config_path=%s accounts=%d failover_statuses=%s "
            "audit_log_enabled=%s audit_log_path=%s"
        ),
        settings.accounts_config_path,
        len(app.state.registry),
        app.state.balancer_config.failover_statuses,
        settings.balancer_audit_log_enabled,
        settings.balancer_audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    reconciler: HealthReconciler | None = getattr(app.state, "health_reconciler", None)
    if reconciler is not None:
        await reconciler.stop()
    forwarder: UpstreamForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def _render_prometheus_metrics(
    *,
    metrics: ProxyMetricsAccumulator,
    registry: AccountRegistry,
    audit_logger: JsonlAuditLogger | None = None,
) -> str:
    lines: list[str] = []
    declared: set[str] = set()

    counters = [
        ("balancer_requests_total", "Total proxied requests.", metrics.proxy_requests_total),
        (
            "balancer_failovers_total",
            "Total pre-flight failovers to another account.",
            metrics.proxy_failovers_total,
        ),
        (
            "balancer_exhausted_total",
            "Requests rejected because no account could serve them.",
            metrics.proxy_exhausted_total,
        ),
        (
            "balancer_body_not_replayable_total",
            "Requests that could not fail over because the body was too large to replay.",
            metrics.proxy_body_not_replayable_total,
        ),
        (
            "balancer_stream_interruptions_total",
            "Responses cut short by an upstream failure after streaming began.",
            metrics.proxy_stream_interruptions_total,
        ),
        (
            "balancer_client_disconnects_total",
            "Requests abandoned by the client.",
            metrics.proxy_client_disconnects_total,
        ),
    ]
    if audit_logger is not None:
        counters.append(
            (
                "balancer_audit_dropped_records_total",
                "Audit log records dropped because the writer fell behind.",
                audit_logger.dropped_records,
            )
        )
    for name, help_text, value in counters:
        _append_prometheus_metric(
            lines,
            declared,
            name=name,
            metric_type="counter",
            help_text=help_text,
            value=value,
        )

    _append_prometheus_metric(
        lines,
        declared,
        name="balancer_connect_latency_ms_sum",
        metric_type="counter",
        help_text="Sum of time to upstream response headers in milliseconds.",
        value=metrics.proxy_connect_latency_sum_ms,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name="balancer_connect_latency_ms_count",
        metric_type="counter",
        help_text="Number of upstream responses measured for connect latency.",
        value=metrics.proxy_connect_latency_count,
    )
    for account_id, value in sorted(metrics.proxy_attempts_by_account.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="balancer_account_attempts_total",
            metric_type="counter",
            help_text="Forward attempts by account.",
            value=value,
            labels={"account": account_id},
        )
    for (account_id, kind), value in sorted(metrics.proxy_failovers_by_account.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="balancer_account_failovers_total",
            metric_type="counter",
            help_text="Failed forward attempts by account and failure kind.",
            value=value,
            labels={"account": account_id, "kind": kind},
        )
    for error_type, value in sorted(metrics.proxy_errors_by_type.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="balancer_errors_total",
            metric_type="counter",
            help_text="Upstream errors by type.",
            value=value,
            labels={"error_type": error_type},
        )
    for status_class, value in sorted(metrics.proxy_responses_by_status_class.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="balancer_responses_total",
            metric_type="counter",
            help_text="Relayed upstream responses by status class.",
            value=value,
            labels={"status_class": status_class},
        )

    for account in registry.list_accounts():
        _append_prometheus_metric(
            lines,
            declared,
            name="balancer_account_in_flight",
            metric_type="gauge",
            help_text="Requests currently held by the account.",
            value=account.in_flight,
            labels={"account": account.account_id},
        )
        for health in HealthState:
            _append_prometheus_metric(
                lines,
                declared,
                name="balancer_account_health",
                metric_type="gauge",
                help_text="1 for the account's current health state.",
                value=1 if account.health == health else 0,
                labels={"account": account.account_id, "state": health.value},
            )

    return "\n".join(lines) + "\n"


@app.get("/health")
async def health() -> dict[str, Any]:
    registry: AccountRegistry = app.state.registry
    accounts = registry.list_accounts()
    healthy = sum(1 for account in accounts if account.health == HealthState.HEALTHY)
    return {
        "status": "ok" if healthy else "degraded",
        "accounts": len(accounts),
        "healthy_accounts": healthy,
        "account_status": [account.as_status() for account in accounts],
    }


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics endpoint is disabled.")
    payload = _render_prometheus_metrics(
        metrics=app.state.proxy_metrics,
        registry=app.state.registry,
        audit_logger=app.state.audit_logger,
    )
    return PlainTextResponse(
        content=payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def _request_has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    content_length = request.headers.get("content-length", "").strip()
    return bool(content_length) and content_length != "0"


def _build_request_context(request: Request, settings: Settings) -> RequestContext:
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    context = RequestContext(
        method=request.method,
        path=path,
        query=request.url.query,
        headers=request.headers,
        body=ReplayableBody(
            request.stream() if _request_has_body(request) else None,
            max_replay_bytes=settings.request_body_replay_max_bytes,
        ),
    )
    context.transition(ConnectionState.HEADERS_PARSED)
    return context


def _balancer_headers(context: RequestContext, account_id: str | None) -> dict[str, str]:
    headers = {
        "x-balancer-request-id": context.request_id,
        "x-balancer-attempts": str(context.attempt_count),
    }
    if account_id is not None:
        headers["x-balancer-account"] = account_id
    if context.selection_reason is not None:
        headers["x-balancer-selection-reason"] = context.selection_reason
    return headers


def _error_response(
    *,
    status_code: int,
    error_type: str,
    message: str,
    context: RequestContext,
    extra: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message, **(extra or {})}},
        headers={**_balancer_headers(context, None), **(headers or {})},
    )


async def _watch_client_disconnect(
    request: Request, body: ReplayableBody, poll_seconds: float
) -> None:
    # Polling before the body is fully read would consume body messages.
    await body.wait_exhausted()
    while not await request.is_disconnected():
        await asyncio.sleep(poll_seconds)


async def _cancel_forward(task: asyncio.Task[StreamedResponse]) -> None:
    task.cancel()
    (result,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(result, StreamedResponse):
        # Finished before the cancel landed.
        await result.aclose()


async def _await_unless_disconnected(
    task: asyncio.Task[StreamedResponse],
    *,
    request: Request,
    body: ReplayableBody,
    poll_seconds: float,
) -> StreamedResponse:
    watcher = asyncio.create_task(
        _watch_client_disconnect(request, body, max(0.01, poll_seconds))
    )
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        watcher.cancel()
        await _cancel_forward(task)
        raise
    watcher.cancel()
    if not task.done():
        await _cancel_forward(task)
        raise ClientDisconnected("client disconnected before the upstream answered")
    return task.result()


@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(path: str, request: Request) -> Response:
    settings: Settings = app.state.settings
    controller: FailoverController = app.state.failover_controller
    proxy_metrics: ProxyMetricsAccumulator = app.state.proxy_metrics
    context = _build_request_context(request, settings)
    proxy_metrics.record_request()

    try:
        streamed = await _await_unless_disconnected(
            asyncio.create_task(controller.attempt(context)),
            request=request,
            body=context.body,
            poll_seconds=settings.client_disconnect_poll_seconds,
        )
    except AllAccountsExhausted as exc:
        context.transition(ConnectionState.CLOSED)
        headers: dict[str, str] = {}
        if exc.earliest_reset_at is not None:
            headers["Retry-After"] = str(
                max(1, math.ceil(exc.earliest_reset_at - time.time()))
            )
        return _error_response(
            status_code=503,
            error_type="all_accounts_exhausted",
            message=str(exc),
            context=context,
            extra={"attempted": exc.attempted, "causes": exc.causes},
            headers=headers,
        )
    except RequestBodyNotReplayable as exc:
        context.transition(ConnectionState.CLOSED)
        return _error_response(
            status_code=502,
            error_type="request_body_not_replayable",
            message=str(exc),
            context=context,
            extra={"cause": exc.cause.as_dict()},
        )
    except ClientDisconnected as exc:
        context.transition(ConnectionState.CLOSED)
        proxy_metrics.record_client_disconnect()
        logger.info(
            "proxy_client_disconnected request_id=%s attempts=%d detail=%s",
            context.request_id,
            context.attempt_count,
            str(exc),
        )
        audit_logger: JsonlAuditLogger = app.state.audit_logger
        audit_logger.emit(
            "proxy_client_disconnected",
            {
                "request_id": context.request_id,
                "attempts": context.attempt_count,
                "bytes_relayed": 0,
            },
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST_STATUS)

    return RelayStreamingResponse(
        streamed,
        extra_headers=_balancer_headers(context, streamed.account_id),
    )


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "account_balancer.main:app",
        host=settings.listen_host,
        port=settings.listen_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
