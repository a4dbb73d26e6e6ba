import json

import pytest

from plancore.config import AppSettings, load_settings, save_settings
from plancore.errors import ConfigurationError


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"reasoner_endpoint": {"base_url": "http://config/v1", "model_id": "cfg-model"}}))
    monkeypatch.setenv("REASONER_BASE_URL", "http://env/v1")
    monkeypatch.delenv("PLANCORE_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.reasoner_endpoint.base_url == "http://config/v1"
    assert settings.reasoner_endpoint.model_id == "cfg-model"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"reasoner_endpoint": {"base_url": "http://config/v1", "model_id": "cfg-model"}}))
    monkeypatch.setenv("REASONER_BASE_URL", "http://env/v1")
    monkeypatch.setenv("PLANCORE_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.reasoner_endpoint.base_url == "http://env/v1"
    assert settings.reasoner_endpoint.model_id == "cfg-model"


def test_env_only_settings_are_nested(tmp_path, monkeypatch):
    monkeypatch.delenv("PLANCORE_ENV_OVERRIDES_CONFIG", raising=False)
    monkeypatch.delenv("REASONER_BASE_URL", raising=False)
    monkeypatch.delenv("MAX_RETRIES", raising=False)
    monkeypatch.setenv("REASONER_MODEL", "env-model")
    monkeypatch.setenv("TOOL_RUNNER_URL", "http://tools.test/rpc")
    monkeypatch.setenv("MAX_PARALLEL", "7")
    monkeypatch.setenv("MAX_REPLAN_CYCLES", "1")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.reasoner_endpoint.model_id == "env-model"
    assert settings.reasoner_endpoint.base_url == "http://127.0.0.1:1234/v1"
    assert settings.tool_runner.base_url == "http://tools.test/rpc"
    assert settings.execution.max_parallel == 7
    assert settings.execution.max_retries == 3
    assert settings.max_replan_cycles == 1


def test_require_model_without_model_raises():
    with pytest.raises(ConfigurationError):
        AppSettings().require_model()


def test_safe_dict_masks_api_key(tmp_path):
    settings = AppSettings.model_validate(
        {"reasoner_endpoint": {"base_url": "http://x/v1", "model_id": "m", "api_key": "secret-key"}}
    )
    assert settings.to_safe_dict()["reasoner_endpoint"]["api_key"] == "********"
    assert settings.reasoner_endpoint.api_key == "secret-key"


def test_save_and_reload_round_trip(tmp_path, monkeypatch):
    monkeypatch.delenv("PLANCORE_ENV_OVERRIDES_CONFIG", raising=False)
    for key in ("REASONER_BASE_URL", "REASONER_MODEL", "MAX_RETRIES"):
        monkeypatch.delenv(key, raising=False)
    config_path = tmp_path / "config.json"
    settings = AppSettings.model_validate({"reasoner_endpoint": {"base_url": "http://x/v1", "model_id": "m"}})
    settings.execution.max_retries = 5
    save_settings(settings, config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded.execution.max_retries == 5
    assert loaded.reasoner_endpoint.model_id == "m"
