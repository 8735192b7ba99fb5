from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from micro_x_chat.errors import ConfigError
from micro_x_chat.provider import ProviderConfig
from micro_x_chat.providers.common import ClientOptions

ENV_PREFIX = "MICRO_X_"

# Provider-native key variables; these win over MICRO_X_API_KEY.
NATIVE_API_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@dataclass
class AppConfig:
    provider: str = "openai"
    api_key: str | None = None
    base_url: str | None = None
    model: str = "gpt-4"
    max_tokens: int | None = 4096
    temperature: float | None = 0.7
    top_p: float | None = None
    stream: bool = True
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)
    system_message: str | None = None
    data_dir: str = ".micro_x"
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_seconds: float = 300.0
    foreign_keys: bool = True
    log_level: str = "INFO"
    log_consumers: list | None = None

    def to_provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            provider_type=self.provider,
            api_key=self.api_key,
            base_url=self.base_url,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            stream=self.stream,
            extra_headers=dict(self.extra_headers),
            extra_body=dict(self.extra_body),
        )

    def client_options(self) -> ClientOptions:
        return ClientOptions(
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            timeout_seconds=self.timeout_seconds,
        )


def load_json_config(path: str | Path | None = None) -> dict:
    """Read ``config.json`` from the working directory, or ``path`` when given.

    A missing default file yields an empty config; a missing explicit file is
    an error.
    """
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as ex:
        raise ConfigError(f"Failed to read {config_path}: {ex}", cause=ex) from ex
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a JSON object")
    return data


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: object, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"{name} must be an integer, got {value!r}", cause=ex) from ex


def _optional_float(value: object, name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"{name} must be a number, got {value!r}", cause=ex) from ex


def _mapping(value: object, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a JSON object")
    return dict(value)


def parse_app_config(config: dict) -> AppConfig:
    defaults = AppConfig()
    max_tokens = config.get("MaxTokens", defaults.max_tokens)
    temperature = config.get("Temperature", defaults.temperature)
    return AppConfig(
        provider=str(config.get("Provider", defaults.provider)).strip().lower(),
        api_key=_optional_str(config.get("ApiKey")),
        base_url=_optional_str(config.get("BaseUrl")),
        model=str(config.get("Model", defaults.model)),
        max_tokens=_optional_int(max_tokens, "MaxTokens"),
        temperature=_optional_float(temperature, "Temperature"),
        top_p=_optional_float(config.get("TopP"), "TopP"),
        stream=_to_bool(config.get("Stream"), default=defaults.stream),
        extra_headers={str(k): str(v) for k, v in _mapping(config.get("ExtraHeaders"), "ExtraHeaders").items()},
        extra_body=_mapping(config.get("ExtraBody"), "ExtraBody"),
        system_message=_optional_str(config.get("SystemMessage")),
        data_dir=str(config.get("DataDir", defaults.data_dir)),
        max_retries=int(config.get("MaxRetries", defaults.max_retries)),
        retry_delay_ms=int(config.get("RetryDelayMs", defaults.retry_delay_ms)),
        timeout_seconds=float(config.get("TimeoutSeconds", defaults.timeout_seconds)),
        foreign_keys=_to_bool(config.get("ForeignKeys"), default=defaults.foreign_keys),
        log_level=str(config.get("LogLevel", defaults.log_level)),
        log_consumers=config.get("LogConsumers"),
    )


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Layer environment variables over ``config`` in place and return it.

    ``MICRO_X_<FIELD>`` values replace file values. The provider-native key
    variable only fills a key the file left unset; ``MICRO_X_API_KEY`` is
    applied last and always wins.
    """
    env = os.environ if environ is None else environ

    def _get(name: str) -> str | None:
        value = env.get(f"{ENV_PREFIX}{name}")
        return value if value not in (None, "") else None

    if (value := _get("PROVIDER")) is not None:
        config.provider = value.strip().lower()
    if (value := _get("MODEL")) is not None:
        config.model = value
    if (value := _get("BASE_URL")) is not None:
        config.base_url = value
    if (value := _get("MAX_TOKENS")) is not None:
        config.max_tokens = _optional_int(value, f"{ENV_PREFIX}MAX_TOKENS")
    if (value := _get("TEMPERATURE")) is not None:
        config.temperature = _optional_float(value, f"{ENV_PREFIX}TEMPERATURE")
    if (value := _get("STREAM")) is not None:
        config.stream = _to_bool(value, default=config.stream)
    if (value := _get("DATA_DIR")) is not None:
        config.data_dir = value
    if (value := _get("SYSTEM_MESSAGE")) is not None:
        config.system_message = value

    native_var = NATIVE_API_KEY_VARS.get(config.provider)
    if config.api_key is None and native_var and env.get(native_var):
        config.api_key = env[native_var]
    if (value := _get("API_KEY")) is not None:
        config.api_key = value
    return config


def load_app_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    return apply_env_overrides(parse_app_config(load_json_config(path)), environ)
