"""Configuration system for kryten-mana.

Pydantic models with sensible defaults. ``ManaConfig`` extends
``KrytenConfig`` so the NATS, channel, service and metrics sections come
from kryten-py unchanged.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, Field, field_validator


class DatabaseConfig(BaseModel):
    path: str = "mana.db"
    busy_timeout_seconds: float = 30.0


class CurrencyConfig(BaseModel):
    name: str = "Mana"
    symbol: str = "✦"


class DecayConfig(BaseModel):
    """Mana rot: units older than rot_time_days are swept away."""
    enabled: bool = True
    rot_time_days: float = 14.0
    sweep_interval_minutes: int = 5

    @field_validator("rot_time_days")
    @classmethod
    def _positive_rot_time(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rot_time_days must be positive")
        return v


class RewardsConfig(BaseModel):
    enabled: bool = True
    streak_rewards: dict[int, int] = Field(
        default_factory=dict,
        description="Streak day → mana reward; the highest day <= streak applies",
    )
    max_reward: int = 10
    restrained_users: list[str] = Field(default_factory=list)
    granted_message: str = "You got {amount} {currency} for logging in (day {streak} streak)"
    withheld_message: str = "You didn't get any {currency} because you are restrained"
    lost_message: str = "Your {currency} login reward could not be delivered, sorry!"

    @field_validator("streak_rewards")
    @classmethod
    def _non_decreasing(cls, v: dict[int, int]) -> dict[int, int]:
        previous = 0
        for day, amount in sorted(v.items()):
            if day < 1 or amount < 0:
                raise ValueError("streak_rewards needs days >= 1 and amounts >= 0")
            if amount < previous:
                raise ValueError("streak_rewards must not decrease with the streak")
            previous = amount
        return v


class AuditConfig(BaseModel):
    transfer_bucket_seconds: int = Field(default=1, ge=1)


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class ManaConfig(KrytenConfig):
    """Full mana service config — extends KrytenConfig."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    ignored_users: list[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> ManaConfig:
    """Load and validate YAML config file into ManaConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return ManaConfig(**raw)
