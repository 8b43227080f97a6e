from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from account_balancer.utils.yaml_utils import load_yaml_dict


class UpstreamAccount(BaseModel):
    name: str
    base_url: str
    auth_scheme: Literal["bearer", "x-api-key"] = "bearer"
    credential: str | None = Field(default=None, repr=False)
    credential_env: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Account name must not be empty.")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError(f"Account base_url must be an http(s) URL, got '{value}'.")
        return normalized

    @staticmethod
    def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
        if env_name:
            env_value = os.getenv(env_name, "").strip()
            if env_value:
                return env_value
        return value

    def resolved_credential(self) -> str | None:
        resolved = self._resolve_env_or_value(self.credential_env, self.credential)
        if resolved is None:
            return None
        return resolved.strip() or None


class BalancerConfig(BaseModel):
    accounts: list[UpstreamAccount] = Field(default_factory=list)
    failover_statuses: list[int] = Field(default_factory=lambda: [502, 503, 504, 529])

    @model_validator(mode="after")
    def _check_accounts(self) -> BalancerConfig:
        seen: set[str] = set()
        for account in self.accounts:
            if account.name in seen:
                raise ValueError(f"Duplicate account name '{account.name}'.")
            seen.add(account.name)
        return self

    @field_validator("failover_statuses")
    @classmethod
    def _check_failover_statuses(cls, value: list[int]) -> list[int]:
        for status_code in value:
            if status_code in {401, 403, 429}:
                raise ValueError(
                    f"Status {status_code} is always a failover status; "
                    "do not list it in failover_statuses."
                )
            if not 100 <= status_code <= 599:
                raise ValueError(f"Invalid HTTP status {status_code}.")
        return sorted(set(value))

    def enabled_accounts(self) -> list[UpstreamAccount]:
        return [account for account in self.accounts if account.enabled]


def load_balancer_config(config_path: str | Path) -> BalancerConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Accounts config not found at '{config_path}'. "
            "Create it or set ACCOUNTS_CONFIG_PATH."
        )

    raw = load_yaml_dict(path)
    config = BalancerConfig.model_validate(raw)
    usable = [
        account for account in config.enabled_accounts() if account.resolved_credential()
    ]
    if not usable:
        raise ValueError(
            f"Accounts config '{config_path}' has no enabled account with a credential."
        )
    return config
