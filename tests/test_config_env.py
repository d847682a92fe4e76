# Environment loading and settings tests.
import os
from dataclasses import replace

from studyquiz.config import get_settings, validate_ai_config
from studyquiz.env import load_environment
from studyquiz.usage import free_quiz_limit


# Ensure missing env vars are populated from the .env file.
def test_load_environment_sets_missing_values(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text('FREE_QUIZ_LIMIT="7"\n', encoding="utf-8")
    # Register the variable so monkeypatch removes what dotenv sets.
    monkeypatch.setenv("FREE_QUIZ_LIMIT", "unset")
    monkeypatch.delenv("FREE_QUIZ_LIMIT")

    assert load_environment(str(env_file)) is True

    assert os.environ["FREE_QUIZ_LIMIT"] == "7"
    assert get_settings().free_quiz_limit == 7


# Ensure existing env vars are not overridden by the .env file.
def test_load_environment_does_not_override_existing(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("OPENAI_API_KEY=ignored\n", encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY", "from_env")

    load_environment(str(env_file))

    assert os.environ["OPENAI_API_KEY"] == "from_env"


# Defaults apply when no tunables are set.
def test_settings_defaults():
    settings = get_settings()

    assert settings.generate_default_model == "gpt-4o-mini"
    assert settings.generate_fallback_model == "gpt-5-mini"
    assert settings.generate_typing_default_model == "gpt-5-mini"
    assert settings.fallback_enabled is True
    assert settings.retry_enabled is True
    assert settings.usage_limits_enabled is True
    assert settings.free_quiz_limit == 5
    assert settings.demo_instant_grade is True
    assert settings.is_test_mode is False


# Retry stays on unless the flag is exactly "false".
def test_retry_flag_only_disabled_by_false(monkeypatch):
    monkeypatch.setenv("ENABLE_MODEL_RETRY", "0")
    assert get_settings().retry_enabled is True

    monkeypatch.setenv("ENABLE_MODEL_RETRY", "FALSE")
    assert get_settings().retry_enabled is False


# Test mode swaps in the test quota.
def test_free_quiz_limit_uses_test_override(monkeypatch):
    monkeypatch.setenv("APP_MODE", "test")
    monkeypatch.setenv("TEST_FREE_QUIZ_LIMIT", "42")

    assert free_quiz_limit(get_settings()) == 42


def test_validate_ai_config_reports_missing_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert "OPENAI_API_KEY" in validate_ai_config(get_settings())

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    settings = get_settings()
    assert validate_ai_config(settings) is None
    assert "GENERATE_DEFAULT" in validate_ai_config(replace(settings, generate_default_model=" "))


# Typing quizzes route through their own model pair, so both must be set.
def test_validate_ai_config_checks_typing_models():
    settings = get_settings()

    assert validate_ai_config(replace(settings, generate_typing_default_model=" ")) == (
        "OPENAI_MODEL_GENERATE_TYPING_DEFAULT is empty"
    )
    assert validate_ai_config(replace(settings, generate_typing_fallback_model="")) == (
        "OPENAI_MODEL_GENERATE_TYPING_FALLBACK is empty"
    )
