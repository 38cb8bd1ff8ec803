import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError, field_validator


class NightscoutConfig(BaseModel):
    base_url: Optional[HttpUrl] = None
    api_secret: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None)
    timeout_seconds: int = Field(default=10, ge=1)
    entries_count: int = Field(default=288, ge=1)
    treatments_count: int = Field(default=1000, ge=1)


class LoopConfig(BaseModel):
    interval_minutes: int = Field(default=5, ge=1, le=60)
    history_hours: int = Field(default=24, ge=1, le=72)
    zero_temp_minutes: int = Field(default=240, ge=30, le=480)
    carb_window_hours: int = Field(default=6, ge=1, le=24)
    max_glucose_age_minutes: int = Field(default=15, ge=5)
    gateway_timeout_seconds: float = Field(default=30.0, gt=0)
    autosens_ratio: float = Field(default=1.0, gt=0)
    microbolus_allowed: bool = True
    optimistic_projection: bool = True
    upload_treatments: bool = True
    upload_devicestatus: bool = True
    device: str = "openaps://nsloop"
    entered_by: str = "nsloop"
    openaps_version: str = "0.7.1"


class EngineConfig(BaseModel):
    kind: Literal["reference", "command"] = "reference"
    command: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=30.0, gt=0)


class PreferencesConfig(BaseModel):
    """Profile defaults and safety limits.

    Nightscout profiles only carry schedules, so everything the decision engine
    needs beyond them comes from here.
    """

    dia: float = Field(default=6.0, gt=0)
    curve: Literal["rapid-acting", "ultra-rapid", "bilinear"] = "rapid-acting"
    use_custom_peak_time: bool = False
    insulin_peak_time: int = Field(default=75, ge=35, le=120)

    basal_rate: float = Field(default=1.0, ge=0)
    sensitivity: float = Field(default=50.0, gt=0)
    carb_ratio: float = Field(default=10.0, gt=0)
    min_bg: float = Field(default=100.0, gt=0)
    max_bg: float = Field(default=100.0, gt=0)

    max_iob: float = Field(default=6.0, ge=0)
    max_basal: float = Field(default=4.0, ge=0)
    max_daily_safety_multiplier: float = Field(default=4.0, gt=0)
    current_basal_safety_multiplier: float = Field(default=5.0, gt=0)
    autosens_max: float = Field(default=2.0, gt=0)
    autosens_min: float = Field(default=0.5, gt=0)

    enable_uam: bool = True
    enable_smb_always: bool = False
    enable_smb_with_bolus: bool = True
    enable_smb_with_cob: bool = True
    enable_smb_with_temptarget: bool = False
    enable_smb_after_carbs: bool = True
    max_smb_basal_minutes: int = Field(default=75, ge=0)

    min_5m_carbimpact: float = Field(default=8.0, ge=0)
    max_cob: float = Field(default=120.0, ge=0)
    timezone: str = "UTC"


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)


class Settings(BaseModel):
    nightscout: NightscoutConfig = Field(default_factory=NightscoutConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    preferences: PreferencesConfig = Field(default_factory=PreferencesConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("engine")
    def _command_required(cls, v: EngineConfig) -> EngineConfig:
        if v.kind == "command" and not v.command:
            raise ValueError("engine.command is required when engine.kind is 'command'")
        return v


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

SECTIONS = ("nightscout", "loop", "engine", "preferences", "server")


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON configuration at {path}") from exc


def _load_env() -> dict[str, Any]:
    env_config: dict[str, Any] = {}

    base_url = os.environ.get("NIGHTSCOUT_BASE_URL") or os.environ.get("NIGHTSCOUT_URL")
    if base_url:
        env_config.setdefault("nightscout", {})["base_url"] = base_url

    api_secret = os.environ.get("NIGHTSCOUT_API_SECRET") or os.environ.get("API_SECRET")
    if api_secret:
        env_config.setdefault("nightscout", {})["api_secret"] = api_secret

    token = os.environ.get("NIGHTSCOUT_TOKEN")
    if token:
        env_config.setdefault("nightscout", {})["token"] = token

    timeout = os.environ.get("NIGHTSCOUT_TIMEOUT_SECONDS")
    if timeout:
        env_config.setdefault("nightscout", {})["timeout_seconds"] = int(timeout)

    interval = os.environ.get("LOOP_INTERVAL_MINUTES")
    if interval:
        env_config.setdefault("loop", {})["interval_minutes"] = int(interval)

    history_hours = os.environ.get("LOOP_HISTORY_HOURS")
    if history_hours:
        env_config.setdefault("loop", {})["history_hours"] = int(history_hours)

    engine_kind = os.environ.get("DECISION_ENGINE")
    if engine_kind:
        env_config.setdefault("engine", {})["kind"] = engine_kind.lower()

    engine_command = os.environ.get("DECISION_ENGINE_COMMAND")
    if engine_command:
        env_config.setdefault("engine", {})["command"] = engine_command.split()

    host = os.environ.get("SERVER_HOST")
    if host:
        env_config.setdefault("server", {})["host"] = host

    port = os.environ.get("SERVER_PORT")
    if port:
        env_config.setdefault("server", {})["port"] = int(port)

    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for section in SECTIONS:
        merged[section] = {**file_config.get(section, {}), **env_config.get(section, {})}
    return merged


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env_config = _load_env()
    file_config = _load_file_config(DEFAULT_CONFIG_PATH)
    merged = merge_settings(env_config=env_config, file_config=file_config)
    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:  # pragma: no cover
        raise RuntimeError(f"Configuration error: {exc}") from exc


__all__ = ["Settings", "get_settings"]
