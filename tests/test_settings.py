import json

import pytest

from autoresearch.config import AppSettings, load_settings


ENV_KEYS = (
    "GROQ_API_KEY",
    "GROQ_MODEL",
    "GEMINI_API_KEY",
    "SERPER_API_KEY",
    "MAX_ATTEMPTS",
    "STEP_DELAY_S",
    "STEP_ORDER",
    "CORS_ORIGINS",
    "AUTORESEARCH_ENV_OVERRIDES_CONFIG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_match_backend_profiles():
    settings = AppSettings()
    assert settings.groq_min_interval_s == 1.5
    assert settings.gemini_min_interval_s == 2.0
    assert settings.backend_max_retries == 3
    assert settings.max_attempts == 2
    assert settings.step_order == "plan"
    assert settings.quality_enabled is False


def test_safe_dict_masks_api_keys():
    settings = AppSettings(groq_api_key="g", gemini_api_key="m", serper_api_key="s")
    data = settings.to_safe_dict()
    assert data["groq_api_key"] == "********"
    assert data["gemini_api_key"] == "********"
    assert data["serper_api_key"] == "********"
    assert data["tavily_api_key"] is None


def test_env_values_are_typed(tmp_path, monkeypatch):
    monkeypatch.setenv("MAX_ATTEMPTS", "4")
    monkeypatch.setenv("STEP_DELAY_S", "0.25")
    monkeypatch.setenv("STEP_ORDER", "dependencies")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.max_attempts == 4
    assert settings.step_delay_s == 0.25
    assert settings.step_order == "dependencies"
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq_model": "from-config"}))
    monkeypatch.setenv("GROQ_MODEL", "from-env")
    settings = load_settings(config_path=config_path)
    assert settings.groq_model == "from-config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq_model": "from-config"}))
    monkeypatch.setenv("GROQ_MODEL", "from-env")
    monkeypatch.setenv("AUTORESEARCH_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.groq_model == "from-env"


def test_secrets_backfilled_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq_api_key": "", "max_attempts": 3}))
    monkeypatch.setenv("GROQ_API_KEY", "env-secret")
    settings = load_settings(config_path=config_path)
    assert settings.groq_api_key == "env-secret"
    assert settings.max_attempts == 3


def test_unreadable_config_is_ignored(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path=config_path)
    assert settings.max_attempts == 2
