"""Configuration management for the fulfillment orchestrator."""

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

from fulfillment.orchestrator.executor import RetryPolicy
from fulfillment.orchestrator.models import OrderCategory


class AppConfig(BaseModel):
    """Application configuration."""
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    completion_max_tokens: int = Field(default=4096, gt=0)
    completion_timeout_seconds: float = Field(default=120.0, gt=0)
    task_max_retries: int = Field(default=3, ge=0)
    retry_backoff_base: float = Field(default=1.0, ge=0)
    retry_backoff_max: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.2, ge=0, le=1)
    service_templates_path: Optional[str] = None
    log_level: str = "INFO"

    def retry_policy(self) -> RetryPolicy:
        """Build the executor retry policy from this config."""
        return RetryPolicy(
            max_retries=self.task_max_retries,
            backoff_base=self.retry_backoff_base,
            backoff_max=self.retry_backoff_max,
            jitter=self.retry_jitter,
            timeout_seconds=self.completion_timeout_seconds,
        )


def load_app_config() -> AppConfig:
    """Load application configuration from environment variables."""
    return AppConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        completion_max_tokens=int(os.getenv("COMPLETION_MAX_TOKENS", "4096")),
        completion_timeout_seconds=float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "120")),
        task_max_retries=int(os.getenv("TASK_MAX_RETRIES", "3")),
        retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "1.0")),
        retry_backoff_max=float(os.getenv("RETRY_BACKOFF_MAX", "30.0")),
        retry_jitter=float(os.getenv("RETRY_JITTER", "0.2")),
        service_templates_path=os.getenv("SERVICE_TEMPLATES_PATH") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def load_service_templates(config_path: str) -> Dict[OrderCategory, str]:
    """Load per-category service instructions from a YAML file.

    The file maps category names to instruction text::

        WEBSITE: |
          Build a responsive site...
        TAX_PREP: |
          Follow current IRS guidance...
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Service templates not found: {config_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Service templates must be a mapping, got {type(data).__name__}")

    templates: Dict[OrderCategory, str] = {}
    for key, instructions in data.items():
        try:
            category = OrderCategory(str(key).upper())
        except ValueError:
            raise ValueError(f"Unknown order category in service templates: {key}") from None
        templates[category] = str(instructions).strip()
    return templates
