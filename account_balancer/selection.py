from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from enum import Enum

from account_balancer.registry import AccountSnapshot, HealthState


class SelectionReason(str, Enum):
    LEAST_LOADED = "least-loaded"
    LEAST_RECENTLY_USED = "least-recently-used"
    RATE_LIMIT_ELAPSED = "rate-limit-elapsed"
    FORCED_FAILOVER = "forced-failover"


@dataclass(frozen=True, slots=True)
class Selected:
    account: AccountSnapshot
    reason: SelectionReason

    @property
    def account_id(self) -> str:
        return self.account.account_id


@dataclass(frozen=True, slots=True)
class NoneAvailable:
    ineligible: dict[str, str] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        if not self.ineligible:
            return "no_accounts_configured"
        if all(value == "tried" for value in self.ineligible.values()):
            return "all_accounts_tried"
        return "no_eligible_account"


SelectionResult = Selected | NoneAvailable


def ineligibility_reason(
    account: AccountSnapshot, tried: Collection[str], now: float
) -> str | None:
    if account.account_id in tried:
        return "tried"
    if account.health == HealthState.HEALTHY:
        return None
    if account.health == HealthState.RATE_LIMITED:
        reset_at = account.rate_limit_reset_at
        if reset_at is None or now >= reset_at:
            return None
        return "rate_limited"
    return account.health.value


def select_account(
    accounts: Sequence[AccountSnapshot],
    tried: Collection[str],
    now: float,
) -> SelectionResult:
    """Pick the least-loaded eligible account, preferring the one idle longest.

    Pure over its inputs: the caller passes registry snapshots, the ids already
    tried for this request, and the current time.
    """
    candidates: list[tuple[int, AccountSnapshot]] = []
    ineligible: dict[str, str] = {}
    for position, account in enumerate(accounts):
        reason = ineligibility_reason(account, tried, now)
        if reason is None:
            candidates.append((position, account))
        else:
            ineligible[account.account_id] = reason

    if not candidates:
        return NoneAvailable(ineligible=ineligible)

    _, chosen = min(
        candidates,
        key=lambda item: (item[1].in_flight, item[1].last_used_at, item[0]),
    )
    return Selected(account=chosen, reason=_reason_for(chosen, candidates, tried))


def _reason_for(
    chosen: AccountSnapshot,
    candidates: list[tuple[int, AccountSnapshot]],
    tried: Collection[str],
) -> SelectionReason:
    if tried:
        return SelectionReason.FORCED_FAILOVER
    if chosen.health == HealthState.RATE_LIMITED:
        return SelectionReason.RATE_LIMIT_ELAPSED
    tied = [
        account
        for _, account in candidates
        if account.in_flight == chosen.in_flight
    ]
    if len(tied) > 1:
        return SelectionReason.LEAST_RECENTLY_USED
    return SelectionReason.LEAST_LOADED
