"""Configuration management for the lead-processing agents."""
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
    deployment_name: str = "gpt-4o-mini"
    max_concurrent: int = 50


@dataclass(frozen=True)
class OpenAIConfig:
    """Plain OpenAI (or compatible) endpoint configuration."""

    api_key: str
    base_url: Optional[str] = None
    max_concurrent: int = 50


@dataclass(frozen=True)
class OrchestrationConfig:
    """Knobs for executions, retries and bookkeeping."""

    execution_timeout_ms: int = 60_000
    cost_per_1k_tokens: float = 0.01
    max_ai_retries: int = 3
    message_history_size: int = 1_000
    tracker_retention_seconds: float = 60.0
    default_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1_500

    @classmethod
    def from_env(cls) -> OrchestrationConfig:
        return cls(
            execution_timeout_ms=int(os.getenv("LEADFLOW_EXECUTION_TIMEOUT_MS", "60000")),
            cost_per_1k_tokens=float(os.getenv("LEADFLOW_COST_PER_1K_TOKENS", "0.01")),
            max_ai_retries=int(os.getenv("LEADFLOW_MAX_AI_RETRIES", "3")),
            message_history_size=int(os.getenv("LEADFLOW_MESSAGE_HISTORY_SIZE", "1000")),
            tracker_retention_seconds=float(os.getenv("LEADFLOW_TRACKER_RETENTION_SECONDS", "60")),
            default_model=os.getenv("LEADFLOW_DEFAULT_MODEL", "gpt-4o-mini"),
        )


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    azure_openai: Optional[AzureOpenAIConfig] = None
    openai: Optional[OpenAIConfig] = None
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
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
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-mini"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )

        openai_config = None
        openai_key = os.getenv("OPENAI_API_KEY")
        if openai_key:
            openai_config = OpenAIConfig(
                api_key=openai_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        return cls(
            azure_openai=azure_config,
            openai=openai_config,
            orchestration=OrchestrationConfig.from_env(),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the ``leadflow`` logger tree."""
    root = logging.getLogger("leadflow")
    root.setLevel(getattr(logging, level, logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
        root.addHandler(handler)


# Global config instance
config = Config.from_env()
