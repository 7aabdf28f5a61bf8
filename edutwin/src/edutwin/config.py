"""
Runtime Configuration

Reads settings from the process environment (and a local .env file when one
exists). The OpenAI key is the only credential; everything else has a default.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ [Config] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ [Config] {name}={raw!r} is not a number, using {default}")
        return default


@dataclass
class Settings:
    """Application settings."""
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_temperature: float = 0.7
    openai_max_tokens: int = 500
    behavior_sample_interval_ms: int = 5000
    behavior_window_days: int = 7
    log_level: str = "INFO"
    log_colors: bool = True

    @property
    def behavior_sample_interval_seconds(self) -> float:
        return self.behavior_sample_interval_ms / 1000.0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            dotenv: Load a .env file first (values already in the environment win)
        """
        if dotenv:
            load_dotenv()

        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            openai_temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            openai_max_tokens=_env_int("OPENAI_MAX_TOKENS", 500),
            behavior_sample_interval_ms=_env_int("BEHAVIOR_SAMPLE_INTERVAL_MS", 5000),
            behavior_window_days=_env_int("BEHAVIOR_WINDOW_DAYS", 7),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_colors=os.getenv("LOG_COLORS", "true").lower() == "true",
        )
