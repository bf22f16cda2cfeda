from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class OverlayConfig(BaseModel):
    """Settings of the lead-capture overlay."""

    enabled: bool = True
    trigger_message_count: int = Field(default=4, ge=1)
    site_url: str = "https://example.com"


class NLUConfig(BaseModel):
    """OpenAI-compatible endpoint used for scenario classification."""

    enabled: bool = False
    base_url: str = "https://bothub.ru/v1"
    api_key: Optional[str] = None
    model: str = "gpt-3.5-turbo"
    timeout: float = Field(default=5.0, gt=0)

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key)


class DiagbotConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    rate_limit_per_minute: int = Field(default=10, ge=1)
    overlay: OverlayConfig = OverlayConfig()
    nlu: NLUConfig = NLUConfig()
    catalog_path: Optional[str] = None
    strict_catalog: bool = True


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid integer in {name}: {raw!r}")
        return None


def load_config(path: Optional[str] = None) -> DiagbotConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DIAGBOT_CONFIG env
            variable or 'config.yaml' in the current directory.

    Environment variables override values read from the file. Overrides are
    merged before validation, so out-of-range values raise
    ``pydantic.ValidationError`` just like values from the file.
    """

    config_path = path or os.getenv("DIAGBOT_CONFIG", "config.yaml")
    data: dict = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    overlay = dict(data.get("overlay") or {})
    nlu = dict(data.get("nlu") or {})

    env_db_url = os.getenv("DIAGBOT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        data["database_url"] = env_db_url

    rate_limit = _env_int("RATE_LIMIT_PER_MINUTE")
    if rate_limit is not None:
        data["rate_limit_per_minute"] = rate_limit
    trigger = _env_int("TRIGGER_MESSAGE_COUNT")
    if trigger is not None:
        overlay["trigger_message_count"] = trigger
    if os.getenv("SITE_URL"):
        overlay["site_url"] = os.environ["SITE_URL"]

    if os.getenv("OPENAI_API_ENABLED"):
        nlu["enabled"] = os.environ["OPENAI_API_ENABLED"].lower() == "true"
    if os.getenv("OPENAI_API_URL"):
        nlu["base_url"] = os.environ["OPENAI_API_URL"]
    if os.getenv("OPENAI_API_KEY"):
        nlu["api_key"] = os.environ["OPENAI_API_KEY"]
    if os.getenv("OPENAI_MODEL"):
        nlu["model"] = os.environ["OPENAI_MODEL"]

    data["overlay"] = overlay
    data["nlu"] = nlu
    config = DiagbotConfig(**data)

    if config.nlu.enabled and not config.nlu.api_key:
        logger.warning("NLU enabled without an API key; falling back to keyword matching")
    return config
