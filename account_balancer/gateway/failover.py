from __future__ import annotations

import logging
import time
from typing import Any, Callable

from account_balancer.errors import (
    AllAccountsExhausted,
    ForwardError,
    ForwardErrorKind,
    RequestBodyNotReplayable,
    UpstreamStreamInterrupted,
)
from account_balancer.gateway.context import ConnectionState, RequestContext
from account_balancer.gateway.forwarder import (
    StreamEnd,
    StreamedResponse,
    StreamFinishCallback,
    UpstreamForwarder,
)
from account_balancer.registry import AccountRegistry, Outcome
from account_balancer.runtime.proxy_metrics import ProxyMetricsAccumulator
from account_balancer.selection import NoneAvailable, select_account

logger = logging.getLogger("uvicorn.error")

EventHook = Callable[[str, dict[str, Any]], None]


def _outcome_for(error: ForwardError, now: float) -> Outcome:
    if error.kind == ForwardErrorKind.RATE_LIMITED:
        return Outcome.rate_limited(error.reset_at if error.reset_at is not None else now)
    if error.kind == ForwardErrorKind.UNAUTHORIZED:
        return Outcome.unauthorized()
    return Outcome.network_error()


class FailoverController:
    """Drives one request across accounts until one answers or none is left.

    Each account is tried at most once per request, so a request makes at most
    as many attempts as there are configured accounts. Failover only happens
    before any response byte was handed to the client.
    """

    def __init__(
        self,
        *,
        registry: AccountRegistry,
        forwarder: UpstreamForwarder,
        metrics: ProxyMetricsAccumulator | None = None,
        event_hook: EventHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.forwarder = forwarder
        self._metrics = metrics
        self._event_hook = event_hook
        self._clock = clock

    def _audit(self, event: str, **fields: Any) -> None:
        if self._event_hook is not None:
            self._event_hook(event, fields)

    async def attempt(self, context: RequestContext) -> StreamedResponse:
        context.transition(ConnectionState.FORWARDING)
        max_attempts = len(self.registry)
        causes: dict[str, str] = {}

        while context.attempt_count < max_attempts:
            selection = select_account(
                self.registry.list_accounts(), context.tried, self._clock()
            )
            if isinstance(selection, NoneAvailable):
                for account_id, reason in selection.ineligible.items():
                    causes.setdefault(account_id, reason)
                break

            account = selection.account
            account_id = account.account_id
            context.record_attempt(account_id)
            context.selection_reason = selection.reason.value
            self.registry.mark_in_flight(account_id)
            if self._metrics is not None:
                self._metrics.record_attempt(account_id)
            logger.info(
                "proxy_attempt request_id=%s attempt=%d account=%s reason=%s in_flight=%d",
                context.request_id,
                context.attempt_count,
                account_id,
                selection.reason.value,
                account.in_flight,
            )
            self._audit(
                "proxy_attempt",
                request_id=context.request_id,
                attempt=context.attempt_count,
                account=account_id,
                reason=selection.reason.value,
                method=context.method,
                path=context.path,
            )

            attempt_started = time.perf_counter()
            try:
                streamed = await self.forwarder.forward(
                    context,
                    account,
                    on_finish=self._on_stream_finished(context, account_id),
                )
            except ForwardError as exc:
                self.registry.release_in_flight(account_id)
                self.registry.mark_outcome(account_id, _outcome_for(exc, self._clock()))
                causes[account_id] = exc.kind.value
                self._record_forward_error(context, exc, attempt_started)
                if not context.body.replayable:
                    if self._metrics is not None:
                        self._metrics.record_body_not_replayable()
                    raise RequestBodyNotReplayable(exc) from exc
                logger.info(
                    "proxy_failover request_id=%s from_account=%s kind=%s attempts=%d max_attempts=%d",
                    context.request_id,
                    account_id,
                    exc.kind.value,
                    context.attempt_count,
                    max_attempts,
                )
                self._audit(
                    "proxy_failover",
                    request_id=context.request_id,
                    from_account=account_id,
                    kind=exc.kind.value,
                    attempts=context.attempt_count,
                )
                continue
            except BaseException:
                # Cancellation or client disconnect: release without blaming the account.
                self.registry.release_in_flight(account_id)
                raise

            connect_ms = (time.perf_counter() - attempt_started) * 1000.0
            self.registry.mark_outcome(account_id, Outcome.success())
            if self._metrics is not None:
                self._metrics.record_connect(connect_ms)
                self._metrics.record_response(streamed.status_code)
            context.transition(ConnectionState.STREAMING_RESPONSE)
            logger.info(
                "proxy_response request_id=%s account=%s status=%d attempts=%d connect_ms=%.2f",
                context.request_id,
                account_id,
                streamed.status_code,
                context.attempt_count,
                connect_ms,
            )
            self._audit(
                "proxy_response",
                request_id=context.request_id,
                account=account_id,
                status=streamed.status_code,
                attempts=context.attempt_count,
                connect_ms=round(connect_ms, 3),
            )
            return streamed

        earliest_reset_at = self.registry.earliest_rate_limit_reset(self._clock())
        if self._metrics is not None:
            self._metrics.record_exhausted()
        logger.warning(
            "proxy_exhausted request_id=%s attempts=%d accounts=%d causes=%s earliest_reset_at=%s",
            context.request_id,
            context.attempt_count,
            max_attempts,
            causes,
            earliest_reset_at,
        )
        self._audit(
            "proxy_exhausted",
            request_id=context.request_id,
            attempted=list(context.attempted),
            causes=causes,
            earliest_reset_at=earliest_reset_at,
        )
        raise AllAccountsExhausted(
            attempted=context.attempted,
            causes=causes,
            max_attempts=max_attempts,
            earliest_reset_at=earliest_reset_at,
        )

    def _record_forward_error(
        self, context: RequestContext, error: ForwardError, attempt_started: float
    ) -> None:
        if self._metrics is not None:
            self._metrics.record_failover(
                account_id=error.account_id,
                kind=error.kind.value,
                error_type=error.error_type,
            )
        logger.warning(
            "proxy_forward_error request_id=%s account=%s kind=%s status=%s error_type=%s attempt_ms=%.2f detail=%s",
            context.request_id,
            error.account_id,
            error.kind.value,
            error.status_code,
            error.error_type,
            (time.perf_counter() - attempt_started) * 1000.0,
            error.detail,
        )
        self._audit(
            "proxy_forward_error",
            request_id=context.request_id,
            attempt=context.attempt_count,
            **error.as_dict(),
        )

    def _on_stream_finished(
        self, context: RequestContext, account_id: str
    ) -> StreamFinishCallback:
        def finish(
            streamed: StreamedResponse,
            end: StreamEnd,
            error: UpstreamStreamInterrupted | None,
        ) -> None:
            self.registry.release_in_flight(account_id)
            context.transition(ConnectionState.CLOSED)
            if end == StreamEnd.INTERRUPTED and error is not None:
                self.registry.mark_outcome(account_id, Outcome.network_error())
                if self._metrics is not None:
                    self._metrics.record_stream_interrupted(error.error_type)
                logger.warning(
                    "proxy_stream_interrupted request_id=%s account=%s bytes_relayed=%d error_type=%s detail=%s",
                    context.request_id,
                    account_id,
                    streamed.bytes_relayed,
                    error.error_type,
                    error.detail,
                )
                self._audit(
                    "proxy_stream_interrupted",
                    request_id=context.request_id,
                    account=account_id,
                    bytes_relayed=streamed.bytes_relayed,
                    error_type=error.error_type,
                    detail=error.detail,
                )
                return
            if end == StreamEnd.CANCELLED:
                if self._metrics is not None:
                    self._metrics.record_client_disconnect()
                logger.info(
                    "proxy_client_disconnected request_id=%s account=%s bytes_relayed=%d",
                    context.request_id,
                    account_id,
                    streamed.bytes_relayed,
                )
                self._audit(
                    "proxy_client_disconnected",
                    request_id=context.request_id,
                    account=account_id,
                    bytes_relayed=streamed.bytes_relayed,
                )
                return
            logger.info(
                "proxy_stream_complete request_id=%s account=%s bytes_relayed=%d total_ms=%.2f",
                context.request_id,
                account_id,
                streamed.bytes_relayed,
                context.elapsed_ms(),
            )

        return finish
