"""Configuration loading and strict validation for TaskNova."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


class StrictModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


FEATURE_CHAT_NORMAL = "chat-normal"
FEATURE_CHAT_IGNITE = "chat-ignite"
FEATURE_CRUD_AI = "crud-ai"
FEATURE_IMAGE_GEN = "image-gen"
FEATURE_CONTENT_ANALYSIS = "content-analysis"


def _default_costs() -> dict[str, Decimal]:
    return {
        FEATURE_CHAT_NORMAL: Decimal("0.10"),
        FEATURE_CHAT_IGNITE: Decimal("0.60"),
        FEATURE_CRUD_AI: Decimal("0.05"),
        FEATURE_IMAGE_GEN: Decimal("1.00"),
        FEATURE_CONTENT_ANALYSIS: Decimal("0.20"),
    }


class LedgerConfig(StrictModel):
    weekly_grant: Decimal = Decimal("10.00")


class MeteringConfig(StrictModel):
    costs: dict[str, Decimal] = Field(default_factory=_default_costs)

    @model_validator(mode="after")
    def _check_costs(self) -> "MeteringConfig":
        for feature, cost in self.costs.items():
            if cost <= 0:
                raise ValueError(f"cost for '{feature}' must be positive")
        normal = self.costs.get(FEATURE_CHAT_NORMAL)
        ignite = self.costs.get(FEATURE_CHAT_IGNITE)
        if normal is not None and ignite is not None and ignite <= normal:
            raise ValueError("chat-ignite must cost more than chat-normal")
        return self

    def cost_for(self, feature: str) -> Decimal:
        try:
            return self.costs[feature]
        except KeyError:
            raise ValueError(f"unknown feature tag '{feature}'") from None


class StorageConfig(StrictModel):
    data_dir: str = "data"
    key_prefix: str = "tasknova_"
    durable_url: str = "sqlite:///data/tasknova.db"
    mirror_writes: bool = True


class LLMConfig(StrictModel):
    default_model: str = "gemini/gemini-2.5-flash"
    timeout_seconds: int = 60
    temperature: float = 0.7


class DashboardConfig(StrictModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9000


class LoggingConfig(StrictModel):
    logs_dir: str = "logs"
    event_file_name: str = "events.jsonl"
    recent_event_limit: int = 500


class AppConfig(StrictModel):
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    metering: MeteringConfig = Field(default_factory=MeteringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and strictly validate YAML config."""
    path = Path(config_path)
    with path.open("r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw)

