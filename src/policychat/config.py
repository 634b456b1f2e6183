"""Configuration loading and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

import yaml

from .prompts import DEFAULT_POLICY

DEFAULT_MODEL_ID = "meta-llama/Llama-3.2-1B-Instruct"

TEMPERATURE_RANGE = (0.0, 2.0)
MAX_TOKENS_RANGE = (64, 4096)


@dataclass
class AppConfig:
    title: str = "PolicyChat"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 1
    sampling_interval_ms: int = 50
    offline_mode: bool = True
    gpu_index: int | None = 0
    settings_path: str = "~/.policychat/settings.json"
    engine: str = "airllm"
    stream_poll_interval_ms: int = 50


@dataclass
class EngineConfig:
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"
    max_context: int = 4096


@dataclass
class ModelSpec:
    key: str
    display_name: str
    local_path: str


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    models: list[ModelSpec] = field(default_factory=list)


@dataclass(frozen=True)
class SessionConfig:
    """User-editable session settings, persisted field by field."""

    model_id: str = DEFAULT_MODEL_ID
    policy_text: str = DEFAULT_POLICY
    enforce_only_policy: bool = True
    temperature: float = 0.6
    max_tokens: int = 512


SESSION_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(SessionConfig))


def session_default(name: str) -> Any:
    if name not in SESSION_FIELDS:
        raise KeyError(f"Unknown session setting: {name}")
    return getattr(SessionConfig(), name)


def coerce_session_field(name: str, value: Any) -> Any:
    """Validate one SessionConfig field, returning its normalized value.

    Raises KeyError for unknown fields and ValueError for values of the
    wrong type or outside the allowed range.
    """
    if name not in SESSION_FIELDS:
        raise KeyError(f"Unknown session setting: {name}")

    if name == "model_id":
        if not isinstance(value, str) or not value.strip():
            raise ValueError("model_id must be a non-empty string")
        return value.strip()

    if name == "policy_text":
        if not isinstance(value, str):
            raise ValueError("policy_text must be a string")
        return value

    if name == "enforce_only_policy":
        if not isinstance(value, bool):
            raise ValueError("enforce_only_policy must be a bool")
        return value

    if name == "temperature":
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("temperature must be a number")
        low, high = TEMPERATURE_RANGE
        if not low <= float(value) <= high:
            raise ValueError(f"temperature must be within [{low}, {high}]")
        return float(value)

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("max_tokens must be an integer")
    low, high = MAX_TOKENS_RANGE
    if not low <= value <= high:
        raise ValueError(f"max_tokens must be within [{low}, {high}]")
    return value


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    app_raw = _get(raw, "app", {})
    engine_raw = _get(raw, "engine", {})
    models_raw = _get(raw, "models", [])

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_get(app_raw, "gpu_index", AppConfig.gpu_index),
        settings_path=str(_get(app_raw, "settings_path", AppConfig.settings_path)),
        engine=str(_get(app_raw, "engine", AppConfig.engine)),
        stream_poll_interval_ms=int(
            _get(app_raw, "stream_poll_interval_ms", AppConfig.stream_poll_interval_ms)
        ),
    )

    engine = EngineConfig(
        compression=_get(engine_raw, "compression", EngineConfig.compression),
        layer_cache_dir=_get(engine_raw, "layer_cache_dir", EngineConfig.layer_cache_dir),
        max_context=int(_get(engine_raw, "max_context", EngineConfig.max_context)),
    )

    models: list[ModelSpec] = []
    if isinstance(models_raw, list):
        for item in models_raw:
            key = _get(item, "key", "")
            if not key:
                continue
            models.append(
                ModelSpec(
                    key=key,
                    display_name=_get(item, "display_name", key),
                    local_path=_get(item, "local_path", ""),
                )
            )

    return RootConfig(app=app, engine=engine, models=models)
