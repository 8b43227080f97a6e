from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from starlette.datastructures import Headers

from account_balancer.gateway.body import ReplayableBody

logger = logging.getLogger("uvicorn.error")


class ConnectionState(str, Enum):
    ACCEPTED = "accepted"
    HEADERS_PARSED = "headers_parsed"
    FORWARDING = "forwarding"
    STREAMING_RESPONSE = "streaming_response"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.ACCEPTED: {ConnectionState.HEADERS_PARSED},
    ConnectionState.HEADERS_PARSED: {ConnectionState.FORWARDING},
    ConnectionState.FORWARDING: {
        ConnectionState.FORWARDING,
        ConnectionState.STREAMING_RESPONSE,
    },
    ConnectionState.STREAMING_RESPONSE: set(),
    ConnectionState.CLOSED: set(),
}


@dataclass(slots=True)
class RequestContext:
    method: str
    path: str
    query: str
    headers: Headers
    body: ReplayableBody
    request_id: str = field(default_factory=lambda: uuid4().hex)
    attempt_count: int = 0
    tried: set[str] = field(default_factory=set)
    attempted: list[str] = field(default_factory=list)
    selection_reason: str | None = None
    state: ConnectionState = ConnectionState.ACCEPTED
    started_at: float = field(default_factory=time.perf_counter)

    def transition(self, state: ConnectionState) -> None:
        # Any state may fall through to CLOSED on disconnect or terminal failure.
        if state != ConnectionState.CLOSED and state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid connection state transition {self.state.value} -> {state.value}"
            )
        logger.debug(
            "proxy_state request_id=%s from=%s to=%s",
            self.request_id,
            self.state.value,
            state.value,
        )
        self.state = state

    def record_attempt(self, account_id: str) -> None:
        self.attempt_count += 1
        self.tried.add(account_id)
        self.attempted.append(account_id)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0
