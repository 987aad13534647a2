"""Configuration management for the agent team."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    deployment_name: str = "gpt-4"
    max_concurrent: int = 50


@dataclass(frozen=True)
class OpenAIConfig:
    """OpenAI (or compatible) endpoint configuration."""

    api_key: str
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    max_concurrent: int = 50


@dataclass(frozen=True)
class TeamSettings:
    """Intervals, TTLs, caps and timeouts of the team core, in seconds where timed."""

    max_queue_size: int = 1000
    priority_weight: float = 1_000_000.0
    mailbox_poll_interval: float = 0.1
    deadlock_check_interval: float = 5.0
    request_timeout: float = 30.0
    heartbeat_interval: float = 30.0
    agent_info_ttl: int = 3600
    result_ttl: int = 3600
    task_ttl: int = 7200
    result_timeout: float = 60.0
    result_poll_interval: float = 1.0
    monitoring_interval: float = 10.0
    health_check_interval: float = 30.0
    agent_timeout: float = 60.0
    metrics_ttl: int = 300
    max_metrics_history: int = 100
    max_agent_logs: int = 100

    @classmethod
    def from_env(cls) -> TeamSettings:
        """Read ``TEAM_<FIELD>`` overrides, e.g. ``TEAM_RESULT_TIMEOUT=120``."""
        defaults = cls()
        overrides = {}
        for name in cls.__dataclass_fields__:
            raw = os.getenv(f"TEAM_{name.upper()}")
            if raw is None:
                continue
            current = getattr(defaults, name)
            overrides[name] = int(raw) if isinstance(current, int) and not isinstance(current, bool) else float(raw)
        return cls(**overrides)


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    azure_openai: Optional[AzureOpenAIConfig] = None
    openai: Optional[OpenAIConfig] = None
    team: TeamSettings = field(default_factory=TeamSettings)
    environment: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")

        azure_config = None
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )

        openai_config = None
        openai_key = os.getenv("OPENAI_API_KEY")
        if openai_key:
            openai_config = OpenAIConfig(
                api_key=openai_key,
                model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        return cls(
            azure_openai=azure_config,
            openai=openai_config,
            team=TeamSettings.from_env(),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global config instance
config = Config.from_env()
