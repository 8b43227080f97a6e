from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient

from account_balancer.main import app
from account_balancer.settings import get_settings

TEST_ACCOUNTS_CONFIG_PATH = Path(__file__).resolve().parent / "fixtures" / "accounts.yaml"


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("ACCOUNTS_CONFIG_PATH", str(TEST_ACCOUNTS_CONFIG_PATH))
    monkeypatch.setenv("BALANCER_AUDIT_LOG_ENABLED", "false")
    monkeypatch.setenv("ACCOUNTS_RELOAD_ENABLED", "false")


def build_test_client(
    monkeypatch: Any,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    **env: Any,
) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    monkeypatch.setattr(app.state, "upstream_transport", transport, raising=False)
    return TestClient(app)
