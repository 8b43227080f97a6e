from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_yaml_dict(
    path: str | Path,
    *,
    error_message: str | None = None,
) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in '{resolved}': {exc}") from exc
    if isinstance(payload, dict):
        return payload
    if error_message is not None:
        raise ValueError(error_message)
    raise ValueError(f"Expected YAML object in '{resolved}'.")


def file_mtime(path: str | Path) -> float | None:
    try:
        return Path(path).stat().st_mtime
    except OSError:
        return None
