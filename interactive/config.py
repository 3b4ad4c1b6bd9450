"""Configuration loader for the walkthrough runtime."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict


DEFAULTS: Dict[str, Any] = {
    "highlight_duration_ms": 2000,
    "settle_ms": 100,
    "retry_max": 3,
    "retry_delay_ms": 2000,
    "show_only_step_delay_ms": 1300,
    "preview_settle_ms": 1300,
    "action_delay_ms": 800,
    "state_change_delay_ms": 1500,
    "multistep_show_delay_ms": 600,
    "multistep_step_delay_ms": 1200,
    "requirement_timeout_ms": 5000,
    "unknown_requirements_pass": True,
    "navmenu_selector": 'ul[aria-label="Navigation"]',
    "content_root_selector": "",
    "grafana_url": "http://localhost:3000",
    "grafana_token": "",
    "http_timeout_s": 5.0,
    "cache_ttl_seconds": 30.0,
    "log_root": "runs",
}

ENV_PREFIX = "GUIDE_"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass(slots=True)
class GuideConfig:
    highlight_duration_ms: int = DEFAULTS["highlight_duration_ms"]
    settle_ms: int = DEFAULTS["settle_ms"]
    retry_max: int = DEFAULTS["retry_max"]
    retry_delay_ms: int = DEFAULTS["retry_delay_ms"]
    show_only_step_delay_ms: int = DEFAULTS["show_only_step_delay_ms"]
    preview_settle_ms: int = DEFAULTS["preview_settle_ms"]
    action_delay_ms: int = DEFAULTS["action_delay_ms"]
    state_change_delay_ms: int = DEFAULTS["state_change_delay_ms"]
    multistep_show_delay_ms: int = DEFAULTS["multistep_show_delay_ms"]
    multistep_step_delay_ms: int = DEFAULTS["multistep_step_delay_ms"]
    requirement_timeout_ms: int = DEFAULTS["requirement_timeout_ms"]
    unknown_requirements_pass: bool = DEFAULTS["unknown_requirements_pass"]
    navmenu_selector: str = DEFAULTS["navmenu_selector"]
    content_root_selector: str = DEFAULTS["content_root_selector"]
    grafana_url: str = DEFAULTS["grafana_url"]
    grafana_token: str = DEFAULTS["grafana_token"]
    http_timeout_s: float = DEFAULTS["http_timeout_s"]
    cache_ttl_seconds: float = DEFAULTS["cache_ttl_seconds"]
    log_root: Path = field(default_factory=lambda: Path(DEFAULTS["log_root"]))

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "GuideConfig":
        data = dict(DEFAULTS)
        data.update({key: value for key, value in mapping.items() if key in DEFAULTS})
        return cls(
            highlight_duration_ms=int(data["highlight_duration_ms"]),
            settle_ms=int(data["settle_ms"]),
            retry_max=max(1, int(data["retry_max"])),
            retry_delay_ms=int(data["retry_delay_ms"]),
            show_only_step_delay_ms=int(data["show_only_step_delay_ms"]),
            preview_settle_ms=int(data["preview_settle_ms"]),
            action_delay_ms=int(data["action_delay_ms"]),
            state_change_delay_ms=int(data["state_change_delay_ms"]),
            multistep_show_delay_ms=int(data["multistep_show_delay_ms"]),
            multistep_step_delay_ms=int(data["multistep_step_delay_ms"]),
            requirement_timeout_ms=int(data["requirement_timeout_ms"]),
            unknown_requirements_pass=_as_bool(data["unknown_requirements_pass"]),
            navmenu_selector=str(data["navmenu_selector"]),
            content_root_selector=str(data["content_root_selector"]),
            grafana_url=str(data["grafana_url"]).rstrip("/"),
            grafana_token=str(data["grafana_token"]),
            http_timeout_s=float(data["http_timeout_s"]),
            cache_ttl_seconds=float(data["cache_ttl_seconds"]),
            log_root=Path(data["log_root"]),
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> GuideConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            env_map[key[len(ENV_PREFIX):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path("guide.toml")
    if path.exists():
        file_map = _load_toml(path).get("guide", {})

    merged = {**file_map, **env_map}
    return GuideConfig.from_mapping(merged)


def ensure_run_directories(run_id: str, config: GuideConfig) -> Path:
    base = config.log_root / run_id
    base.mkdir(parents=True, exist_ok=True)
    return base
