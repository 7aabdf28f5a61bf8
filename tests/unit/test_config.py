"""
Unit Tests for Settings

Tests environment parsing and defaults.
"""

import os
import sys

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "edutwin", "src"))

from edutwin.config import Settings

ENV_VARS = [
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_TEMPERATURE",
    "OPENAI_MAX_TOKENS",
    "BEHAVIOR_SAMPLE_INTERVAL_MS",
    "BEHAVIOR_WINDOW_DAYS",
    "LOG_LEVEL",
    "LOG_COLORS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings.from_env(dotenv=False)

        assert settings.openai_api_key is None
        assert settings.openai_model == "gpt-4o"
        assert settings.openai_temperature == 0.7
        assert settings.openai_max_tokens == 500
        assert settings.behavior_sample_interval_ms == 5000
        assert settings.behavior_sample_interval_seconds == 5.0
        assert settings.behavior_window_days == 7
        assert settings.log_level == "INFO"
        assert settings.log_colors is True

    def test_reads_environment(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "sk-test")
        clean_env.setenv("OPENAI_MODEL", "gpt-4o-mini")
        clean_env.setenv("OPENAI_TEMPERATURE", "0.3")
        clean_env.setenv("OPENAI_MAX_TOKENS", "256")
        clean_env.setenv("BEHAVIOR_SAMPLE_INTERVAL_MS", "250")
        clean_env.setenv("LOG_LEVEL", "debug")
        clean_env.setenv("LOG_COLORS", "false")

        settings = Settings.from_env(dotenv=False)

        assert settings.openai_api_key == "sk-test"
        assert settings.openai_model == "gpt-4o-mini"
        assert settings.openai_temperature == 0.3
        assert settings.openai_max_tokens == 256
        assert settings.behavior_sample_interval_seconds == 0.25
        assert settings.log_level == "DEBUG"
        assert settings.log_colors is False

    def test_invalid_numbers_fall_back(self, clean_env):
        clean_env.setenv("OPENAI_MAX_TOKENS", "lots")
        clean_env.setenv("OPENAI_TEMPERATURE", "warm")
        clean_env.setenv("BEHAVIOR_WINDOW_DAYS", " ")

        settings = Settings.from_env(dotenv=False)

        assert settings.openai_max_tokens == 500
        assert settings.openai_temperature == 0.7
        assert settings.behavior_window_days == 7
