"""
reprcell — Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults)
2. Environment variables (overrides, prefix ``REPRCELL_``)

Components take the sub-config they need and fall back to its defaults
when none is passed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from reprcell.types import ReadStrategy, ViolationPolicy

# ─── Sub-configs ──────────────────────────────────────────────────


class CellConfig(BaseModel):
    policy: ViolationPolicy = ViolationPolicy.ROLLBACK
    violation_message: str = "Invariant violated"
    # Extra predicate runs per validation to catch non-deterministic invariants.
    # 0 disables the probe.
    determinism_checks: int = Field(default=0, ge=0)


class EagerConfig(BaseModel):
    max_workers: int = Field(default=4, ge=1)
    thread_name_prefix: str = "reprcell-validate"
    read_strategy: ReadStrategy = ReadStrategy.WAIT
    # Upper bound a cached read waits on a pending validation before
    # validating inline instead. None waits indefinitely.
    wait_timeout_s: float | None = None

    @field_validator("wait_timeout_s")
    @classmethod
    def _non_negative_timeout(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("wait_timeout_s must be >= 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class ReprCellConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPRCELL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    cell: CellConfig = Field(default_factory=CellConfig)
    eager: EagerConfig = Field(default_factory=EagerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ReprCellConfig:
    """
    Load configuration from a YAML file, then apply explicit overrides.

    Environment variables are applied by pydantic-settings for any field
    the file and overrides leave unset.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    if overrides:
        raw = _deep_merge(raw, overrides)

    return ReprCellConfig(**raw)
