from __future__ import annotations

from enum import Enum
from typing import Any


class ForwardErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    NETWORK_ERROR = "network_error"


class BalancerError(Exception):
    """Base class for errors raised while balancing a request."""


class ForwardError(BalancerError):
    """One forward attempt against one account failed."""

    def __init__(
        self,
        kind: ForwardErrorKind,
        *,
        account_id: str,
        detail: str = "",
        status_code: int | None = None,
        reset_at: float | None = None,
        error_type: str | None = None,
    ) -> None:
        self.kind = kind
        self.account_id = account_id
        self.detail = detail
        self.status_code = status_code
        self.reset_at = reset_at
        self.error_type = error_type or kind.value
        message = f"{kind.value} from account '{account_id}'"
        if status_code is not None:
            message = f"{message} (status {status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "account": self.account_id,
            "status_code": self.status_code,
            "error_type": self.error_type,
            "reset_at": self.reset_at,
            "detail": self.detail,
        }


class UpstreamStreamInterrupted(ForwardError):
    """The upstream failed after response bytes already reached the client."""

    def __init__(
        self,
        *,
        account_id: str,
        detail: str = "",
        bytes_relayed: int = 0,
        error_type: str | None = None,
    ) -> None:
        super().__init__(
            ForwardErrorKind.NETWORK_ERROR,
            account_id=account_id,
            detail=detail,
            error_type=error_type,
        )
        self.bytes_relayed = bytes_relayed


class AllAccountsExhausted(BalancerError):
    def __init__(
        self,
        *,
        attempted: list[str],
        causes: dict[str, str],
        max_attempts: int,
        earliest_reset_at: float | None = None,
    ) -> None:
        self.attempted = list(attempted)
        self.causes = dict(causes)
        self.max_attempts = max_attempts
        self.earliest_reset_at = earliest_reset_at
        super().__init__(
            f"No account could serve the request after {len(self.attempted)} "
            f"attempt(s) (ceiling {max_attempts})."
        )


class RequestBodyNotReplayable(BalancerError):
    """A pre-flight failure happened but the request body can no longer be resent."""

    def __init__(self, cause: ForwardError) -> None:
        self.cause = cause
        super().__init__(
            f"Request body exceeded the replay buffer; cannot fail over after: {cause}"
        )


class ClientDisconnected(BalancerError):
    """The inbound client went away. A cancellation signal, never an account fault."""
