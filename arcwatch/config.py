from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "ARCWATCH_"


def _resolve_project_root() -> Path:
    override = os.getenv("ARCWATCH_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


class TrustTierRule(BaseModel):
    tier: str
    min_resolved: int
    min_accuracy: float
    max_stake_points: int


DEFAULT_TRUST_TIER_RULES = [
    TrustTierRule(tier="elite", min_resolved=80, min_accuracy=0.66, max_stake_points=500),
    TrustTierRule(tier="trusted", min_resolved=35, min_accuracy=0.58, max_stake_points=320),
    TrustTierRule(tier="regular", min_resolved=12, min_accuracy=0.50, max_stake_points=220),
]


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: f"sqlite:///{_resolve_project_root() / 'data' / 'arcwatch.db'}"
    )
    log_level: str = "INFO"

    digest_dedup_window_minutes: int = 10
    recap_window_hours: int = 24
    glowup_major_weight: float = 3.0
    glowup_minor_weight: float = 1.0

    prediction_min_stake_points: int = 5
    prediction_max_stake_points: int = 500
    prediction_default_stake_points: int = 10
    prediction_entry_max_stake_points: int = 120
    prediction_daily_stake_cap_points: int = 1000
    prediction_daily_submission_cap: int = 30
    trust_tier_rules: list[TrustTierRule] = Field(
        default_factory=lambda: [rule.model_copy() for rule in DEFAULT_TRUST_TIER_RULES]
    )

    # "Today" for the daily prediction budget starts at midnight in this zone.
    day_boundary_timezone: str = "UTC"

    @field_validator("day_boundary_timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @property
    def day_boundary_zone(self) -> ZoneInfo:
        return ZoneInfo(self.day_boundary_timezone)


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in Settings.model_fields:
        if name == "trust_tier_rules":
            continue
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is not None and value.strip():
            overrides[name] = value.strip()
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Defaults, then the YAML file named by ``ARCWATCH_CONFIG``, then env vars."""
    values: dict[str, Any] = {}
    config_path = os.getenv("ARCWATCH_CONFIG", "").strip()
    if config_path:
        values.update(load_yaml(Path(config_path).expanduser()))
    values.update(_env_overrides())
    return Settings(**values)
