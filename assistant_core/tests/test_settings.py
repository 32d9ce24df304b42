import pytest
from pydantic import ValidationError

from assistant_core.config.settings import AssistantSettings


def test_yaml_config_is_loaded(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("seller_assistant_id: asst_from_yaml\nrun_max_wait: 12\n", encoding="utf-8")
    monkeypatch.setenv("ASSISTANT_CONFIG_FILE", str(cfg))
    monkeypatch.delenv("SELLER_ASSISTANT_ID", raising=False)
    monkeypatch.delenv("RUN_MAX_WAIT", raising=False)
    settings = AssistantSettings(_env_file=None)
    assert settings.seller_assistant_id == "asst_from_yaml"
    assert settings.run_max_wait == 12
    assert settings.assistant_ids()["seller"] == "asst_from_yaml"


def test_environment_overrides_yaml(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("max_retries: 5\n", encoding="utf-8")
    monkeypatch.setenv("ASSISTANT_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("MAX_RETRIES", "1")
    assert AssistantSettings(_env_file=None).max_retries == 1


def test_defaults_are_seconds():
    settings = AssistantSettings(_env_file=None, openai_api_key=None)
    assert settings.thread_sweep_interval == 900
    assert settings.thread_max_age == 30 * 24 * 3600
    assert settings.transcription_poll_interval == 0.5


def test_short_api_key_is_rejected():
    with pytest.raises(ValidationError):
        AssistantSettings(_env_file=None, openai_api_key="short")
