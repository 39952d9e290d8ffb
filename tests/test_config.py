import pytest
from pydantic import ValidationError

from openfang.config import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_OPENAI_MODEL,
    Settings,
    disabled_tool_names,
    model_for_provider,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("AI_PROVIDER", "ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "MODEL", "DISABLED_TOOLS"):
        monkeypatch.delenv(name, raising=False)


def test_anthropic_key_required_for_official_endpoint():
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_custom_gateway_does_not_need_key():
    settings = Settings(_env_file=None, ANTHROPIC_BASE_URL="http://localhost:8080")
    assert settings.anthropic_api_key == ""


def test_openai_provider_does_not_need_anthropic_key():
    settings = Settings(_env_file=None, AI_PROVIDER="openai", OPENAI_API_KEY="k")
    assert model_for_provider(settings) == DEFAULT_OPENAI_MODEL


def test_values_read_from_environment(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
    monkeypatch.setenv("MODEL", "claude-custom")
    monkeypatch.setenv("DISABLED_TOOLS", "get_current_time, delete_schedule ,")

    settings = Settings(_env_file=None)

    assert settings.anthropic_api_key == "env-key"
    assert model_for_provider(settings) == "claude-custom"
    assert disabled_tool_names(settings) == frozenset({"get_current_time", "delete_schedule"})


def test_defaults():
    settings = Settings(_env_file=None, ANTHROPIC_API_KEY="k")

    assert model_for_provider(settings) == DEFAULT_ANTHROPIC_MODEL
    assert settings.max_tool_iterations == 10
    assert settings.scheduler_poll_interval_seconds == 30.0
    assert settings.delivery_max_length == 1900
    assert disabled_tool_names(settings) == frozenset()
