import json

import pytest
from pydantic import ValidationError

from nsloop.core import settings as settings_module
from nsloop.core.settings import EngineConfig, Settings, merge_settings


@pytest.fixture()
def isolated_settings(tmp_path, monkeypatch):
    for name in (
        "NIGHTSCOUT_URL",
        "NIGHTSCOUT_BASE_URL",
        "NIGHTSCOUT_API_SECRET",
        "API_SECRET",
        "NIGHTSCOUT_TOKEN",
        "LOOP_INTERVAL_MINUTES",
        "DECISION_ENGINE",
        "DECISION_ENGINE_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)
    config_path = tmp_path / "config.json"
    monkeypatch.setattr(settings_module, "DEFAULT_CONFIG_PATH", config_path)
    settings_module.get_settings.cache_clear()
    yield config_path
    settings_module.get_settings.cache_clear()


def test_defaults(isolated_settings):
    settings = settings_module.get_settings()
    assert settings.nightscout.base_url is None
    assert settings.loop.interval_minutes == 5
    assert settings.loop.zero_temp_minutes == 240
    assert settings.engine.kind == "reference"
    assert settings.preferences.dia == 6.0


def test_env_overrides_file(isolated_settings, monkeypatch):
    isolated_settings.write_text(
        json.dumps(
            {
                "nightscout": {"base_url": "https://file.example.com", "timeout_seconds": 20},
                "preferences": {"basal_rate": 0.85, "curve": "ultra-rapid"},
            }
        )
    )
    monkeypatch.setenv("NIGHTSCOUT_URL", "https://env.example.com")
    monkeypatch.setenv("API_SECRET", "abc")
    monkeypatch.setenv("LOOP_INTERVAL_MINUTES", "10")

    settings = settings_module.get_settings()
    assert str(settings.nightscout.base_url).startswith("https://env.example.com")
    assert settings.nightscout.api_secret == "abc"
    assert settings.nightscout.timeout_seconds == 20
    assert settings.loop.interval_minutes == 10
    assert settings.preferences.basal_rate == 0.85
    assert settings.preferences.curve == "ultra-rapid"


def test_command_engine_from_env(isolated_settings, monkeypatch):
    monkeypatch.setenv("DECISION_ENGINE", "Command")
    monkeypatch.setenv("DECISION_ENGINE_COMMAND", "node determine-basal.js")
    settings = settings_module.get_settings()
    assert settings.engine.kind == "command"
    assert settings.engine.command == ["node", "determine-basal.js"]


def test_invalid_json_config(isolated_settings):
    isolated_settings.write_text("{not json")
    with pytest.raises(RuntimeError):
        settings_module.get_settings()


def test_command_engine_requires_command():
    with pytest.raises(ValidationError):
        Settings(engine=EngineConfig(kind="command"))


def test_merge_settings_env_wins():
    merged = merge_settings({"loop": {"interval_minutes": 3}}, {"loop": {"interval_minutes": 7, "history_hours": 12}})
    assert merged["loop"] == {"interval_minutes": 3, "history_hours": 12}
    assert merged["server"] == {}
