from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from account_balancer.config import load_balancer_config
from account_balancer.registry import AccountRegistry
from account_balancer.utils.yaml_utils import file_mtime


@dataclass(slots=True)
class HealthReconcilerStatus:
    enabled: bool
    interval_seconds: float
    reload_enabled: bool
    last_run_epoch: float | None = None
    last_recovered_accounts: int = 0
    last_reload_epoch: float | None = None
    last_error: str | None = None


class HealthReconciler:
    """Periodically returns accounts to healthy and picks up account file edits."""

    def __init__(
        self,
        *,
        registry: AccountRegistry,
        logger: logging.Logger | None = None,
        enabled: bool = True,
        interval_seconds: float = 5.0,
        unauthorized_cooldown_seconds: float = 900.0,
        unreachable_cooldown_seconds: float = 30.0,
        accounts_config_path: str | Path | None = None,
        reload_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._logger = logger
        self._enabled = enabled
        self._interval_seconds = max(0.1, float(interval_seconds))
        self._unauthorized_cooldown_seconds = float(unauthorized_cooldown_seconds)
        self._unreachable_cooldown_seconds = float(unreachable_cooldown_seconds)
        self._accounts_config_path = (
            Path(accounts_config_path) if accounts_config_path else None
        )
        self._reload_enabled = reload_enabled and self._accounts_config_path is not None
        self._clock = clock
        self._config_mtime = (
            file_mtime(self._accounts_config_path)
            if self._accounts_config_path is not None
            else None
        )
        self._task: asyncio.Task[None] | None = None
        self._status = HealthReconcilerStatus(
            enabled=enabled,
            interval_seconds=self._interval_seconds,
            reload_enabled=self._reload_enabled,
        )

    @property
    def status(self) -> HealthReconcilerStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="account-health-reconciler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> int:
        self._status.last_error = None
        if self._reload_enabled:
            self._reload_if_changed()
        transitions = self._registry.reconcile(
            now=self._clock(),
            unauthorized_cooldown_seconds=self._unauthorized_cooldown_seconds,
            unreachable_cooldown_seconds=self._unreachable_cooldown_seconds,
        )
        self._status.last_run_epoch = time.time()
        self._status.last_recovered_accounts = len(transitions)
        return len(transitions)

    def _reload_if_changed(self) -> bool:
        path = self._accounts_config_path
        if path is None:
            return False
        mtime = file_mtime(path)
        if mtime is None or mtime == self._config_mtime:
            return False
        self._config_mtime = mtime
        try:
            config = load_balancer_config(path)
        except (OSError, ValueError) as exc:
            # The running account set stays in place until the file is fixed.
            self._status.last_error = str(exc)
            if self._logger is not None:
                self._logger.warning(
                    "accounts_reload_failed path=%s error=%s", path, str(exc)
                )
            return False
        self._registry.replace(config.accounts)
        self._status.last_reload_epoch = time.time()
        if self._logger is not None:
            self._logger.info(
                "accounts_reloaded path=%s accounts=%d", path, len(self._registry)
            )
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_run_epoch = time.time()
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning(
                        "account_health_reconcile_failed error=%s", str(exc)
                    )
            await asyncio.sleep(self._interval_seconds)
