from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from account_balancer.config import UpstreamAccount

logger = logging.getLogger("uvicorn.error")


class HealthState(str, Enum):
    HEALTHY = "healthy"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    UNREACHABLE = "unreachable"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True, slots=True)
class Outcome:
    kind: OutcomeKind
    reset_at: float | None = None

    @classmethod
    def success(cls) -> Outcome:
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def rate_limited(cls, reset_at: float) -> Outcome:
        return cls(OutcomeKind.RATE_LIMITED, reset_at=reset_at)

    @classmethod
    def unauthorized(cls) -> Outcome:
        return cls(OutcomeKind.UNAUTHORIZED)

    @classmethod
    def network_error(cls) -> Outcome:
        return cls(OutcomeKind.NETWORK_ERROR)


_HEALTH_FOR_OUTCOME = {
    OutcomeKind.SUCCESS: HealthState.HEALTHY,
    OutcomeKind.RATE_LIMITED: HealthState.RATE_LIMITED,
    OutcomeKind.UNAUTHORIZED: HealthState.UNAUTHORIZED,
    OutcomeKind.NETWORK_ERROR: HealthState.UNREACHABLE,
}


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    account_id: str
    base_url: str
    auth_scheme: str
    credential: str = field(repr=False)
    headers: dict[str, str]
    health: HealthState
    rate_limit_reset_at: float | None
    last_used_at: float
    in_flight: int
    health_changed_at: float
    consecutive_failures: int

    def as_status(self) -> dict[str, Any]:
        return {
            "account": self.account_id,
            "base_url": self.base_url,
            "health": self.health.value,
            "rate_limit_reset_at": self.rate_limit_reset_at,
            "last_used_at": self.last_used_at,
            "in_flight": self.in_flight,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass(frozen=True, slots=True)
class HealthTransition:
    account_id: str
    previous: HealthState
    current: HealthState
    cause: str


@dataclass(slots=True)
class _AccountEntry:
    account_id: str
    base_url: str
    auth_scheme: str
    credential: str = field(repr=False)
    headers: dict[str, str] = field(default_factory=dict)
    health: HealthState = HealthState.HEALTHY
    rate_limit_reset_at: float | None = None
    last_used_at: float = 0.0
    in_flight: int = 0
    health_changed_at: float = 0.0
    consecutive_failures: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_config(cls, account: UpstreamAccount, now: float) -> _AccountEntry:
        return cls(
            account_id=account.name,
            base_url=account.base_url,
            auth_scheme=account.auth_scheme,
            credential=account.resolved_credential() or "",
            headers=dict(account.headers),
            health_changed_at=now,
        )

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            account_id=self.account_id,
            base_url=self.base_url,
            auth_scheme=self.auth_scheme,
            credential=self.credential,
            headers=dict(self.headers),
            health=self.health,
            rate_limit_reset_at=self.rate_limit_reset_at,
            last_used_at=self.last_used_at,
            in_flight=self.in_flight,
            health_changed_at=self.health_changed_at,
            consecutive_failures=self.consecutive_failures,
        )

    def set_health(
        self, health: HealthState, now: float, cause: str
    ) -> HealthTransition | None:
        previous = self.health
        self.health = health
        if health != HealthState.RATE_LIMITED:
            self.rate_limit_reset_at = None
        if previous == health:
            return None
        self.health_changed_at = now
        return HealthTransition(
            account_id=self.account_id,
            previous=previous,
            current=health,
            cause=cause,
        )


class AccountRegistry:
    """Configured upstream accounts and their live health and load.

    Every mutation takes the account's own lock, so concurrent requests only
    contend when they touch the same account. Readers get immutable snapshots
    and may observe slightly stale health.
    """

    def __init__(
        self,
        accounts: Iterable[UpstreamAccount],
        *,
        clock: Callable[[], float] = time.time,
        event_hook: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self._clock = clock
        self._event_hook = event_hook
        self._entries: dict[str, _AccountEntry] = {}
        self._install(accounts)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._entries

    def _install(self, accounts: Iterable[UpstreamAccount]) -> None:
        now = self._clock()
        entries: dict[str, _AccountEntry] = {}
        for account in accounts:
            if not account.enabled or not account.resolved_credential():
                continue
            if account.name in entries:
                raise ValueError(f"Duplicate account name '{account.name}'.")
            entries[account.name] = _AccountEntry.from_config(account, now)
        self._entries = entries

    def list_accounts(self) -> list[AccountSnapshot]:
        entries = list(self._entries.values())
        output: list[AccountSnapshot] = []
        for entry in entries:
            with entry.lock:
                output.append(entry.snapshot())
        return output

    def get(self, account_id: str) -> AccountSnapshot | None:
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        with entry.lock:
            return entry.snapshot()

    def mark_in_flight(self, account_id: str) -> None:
        entry = self._entries.get(account_id)
        if entry is None:
            return
        with entry.lock:
            entry.in_flight += 1
            entry.last_used_at = self._clock()

    def release_in_flight(self, account_id: str) -> None:
        entry = self._entries.get(account_id)
        if entry is None:
            # Released after a reload dropped the account.
            logger.debug("registry_release_unknown account=%s", account_id)
            return
        with entry.lock:
            if entry.in_flight <= 0:
                logger.warning("registry_release_underflow account=%s", account_id)
                entry.in_flight = 0
                return
            entry.in_flight -= 1

    def mark_outcome(
        self, account_id: str, outcome: Outcome, now: float | None = None
    ) -> HealthTransition | None:
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        current = self._clock() if now is None else now
        with entry.lock:
            if outcome.kind == OutcomeKind.SUCCESS:
                entry.consecutive_failures = 0
            else:
                entry.consecutive_failures += 1
            transition = entry.set_health(
                _HEALTH_FOR_OUTCOME[outcome.kind], current, cause=outcome.kind.value
            )
            if outcome.kind == OutcomeKind.RATE_LIMITED:
                reset_at = outcome.reset_at if outcome.reset_at is not None else current
                previous_reset = entry.rate_limit_reset_at or 0.0
                entry.rate_limit_reset_at = max(reset_at, previous_reset)
        self._emit_transition(transition, entry.rate_limit_reset_at)
        return transition

    def reconcile(
        self,
        *,
        now: float | None = None,
        unauthorized_cooldown_seconds: float = 0.0,
        unreachable_cooldown_seconds: float = 0.0,
    ) -> list[HealthTransition]:
        current = self._clock() if now is None else now
        transitions: list[HealthTransition] = []
        for entry in list(self._entries.values()):
            with entry.lock:
                transition = self._reconcile_entry(
                    entry,
                    current,
                    unauthorized_cooldown_seconds=unauthorized_cooldown_seconds,
                    unreachable_cooldown_seconds=unreachable_cooldown_seconds,
                )
            if transition is not None:
                transitions.append(transition)
                self._emit_transition(transition, None)
        return transitions

    @staticmethod
    def _reconcile_entry(
        entry: _AccountEntry,
        now: float,
        *,
        unauthorized_cooldown_seconds: float,
        unreachable_cooldown_seconds: float,
    ) -> HealthTransition | None:
        if entry.health == HealthState.RATE_LIMITED:
            if entry.rate_limit_reset_at is None or now >= entry.rate_limit_reset_at:
                return entry.set_health(HealthState.HEALTHY, now, cause="rate_limit_reset")
            return None
        if entry.health == HealthState.UNREACHABLE:
            if (
                unreachable_cooldown_seconds > 0
                and now - entry.health_changed_at >= unreachable_cooldown_seconds
            ):
                return entry.set_health(HealthState.HEALTHY, now, cause="unreachable_cooldown")
            return None
        if entry.health == HealthState.UNAUTHORIZED:
            if (
                unauthorized_cooldown_seconds > 0
                and now - entry.health_changed_at >= unauthorized_cooldown_seconds
            ):
                return entry.set_health(
                    HealthState.HEALTHY, now, cause="unauthorized_cooldown"
                )
        return None

    def replace(self, accounts: Iterable[UpstreamAccount]) -> None:
        """Swap in a reloaded account set.

        Surviving accounts keep their load counters; they also keep their
        health unless the endpoint or credential changed.
        """
        previous = self._entries
        self._install(accounts)
        for account_id, entry in self._entries.items():
            old = previous.get(account_id)
            if old is None:
                continue
            with old.lock:
                entry.in_flight = old.in_flight
                entry.last_used_at = old.last_used_at
                if old.base_url == entry.base_url and old.credential == entry.credential:
                    entry.health = old.health
                    entry.rate_limit_reset_at = old.rate_limit_reset_at
                    entry.health_changed_at = old.health_changed_at
                    entry.consecutive_failures = old.consecutive_failures
        if self._event_hook is not None:
            self._event_hook(
                "accounts_reloaded",
                {
                    "accounts": list(self._entries.keys()),
                    "removed": sorted(set(previous) - set(self._entries)),
                    "added": sorted(set(self._entries) - set(previous)),
                },
            )

    def earliest_rate_limit_reset(self, now: float | None = None) -> float | None:
        current = self._clock() if now is None else now
        resets = [
            snapshot.rate_limit_reset_at
            for snapshot in self.list_accounts()
            if snapshot.health == HealthState.RATE_LIMITED
            and snapshot.rate_limit_reset_at is not None
            and snapshot.rate_limit_reset_at > current
        ]
        return min(resets) if resets else None

    def _emit_transition(
        self, transition: HealthTransition | None, reset_at: float | None
    ) -> None:
        if transition is None:
            return
        logger.info(
            "account_health_changed account=%s from=%s to=%s cause=%s reset_at=%s",
            transition.account_id,
            transition.previous.value,
            transition.current.value,
            transition.cause,
            reset_at,
        )
        if self._event_hook is not None:
            self._event_hook(
                "account_health_changed",
                {
                    "account": transition.account_id,
                    "from": transition.previous.value,
                    "to": transition.current.value,
                    "cause": transition.cause,
                    "reset_at": reset_at,
                },
            )
