"""Settings models and the YAML + environment loader."""

from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError

from esgsync.duration import parse_duration
from esgsync.errors import ConfigError
from esgsync.realtime import DEFAULT_MAX_SUBSCRIPTIONS, DEFAULT_TABLE_LABELS

DEFAULT_ENV_PREFIX = "ESGSYNC__"


def _check_duration(value: str | int) -> str | int:
    parse_duration(value)
    return value


DurationSetting = Annotated[str | int, AfterValidator(_check_duration)]


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    retry_budget: DurationSetting | None = "60s"
    max_items: int | None = Field(None, ge=1)
    gc_interval: DurationSetting = "1m"


class RealtimeSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_subscriptions: int = Field(DEFAULT_MAX_SUBSCRIPTIONS, ge=0)
    debounce: DurationSetting = "500ms"
    table_labels: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_TABLE_LABELS)
    )


class RefreshSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    interval: DurationSetting = "30s"


class AutoSaveSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    debounce: DurationSetting = "3s"
    saved_display: DurationSetting = "2s"
    error_display: DurationSetting = "5s"


class BackendSettings(BaseModel):
    """Managed backend connection. An empty url disables the REST adapter."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = ""
    api_key: str = ""
    timeout_seconds: float = Field(30.0, gt=0)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file_path: str = ""
    backup_count: int = Field(7, ge=0)


class SyncSettings(BaseModel):
    """Top-level settings for the data-synchronization layer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cache: CacheSettings = CacheSettings()
    realtime: RealtimeSettings = RealtimeSettings()
    refresh: RefreshSettings = RefreshSettings()
    autosave: AutoSaveSettings = AutoSaveSettings()
    backend: BackendSettings = BackendSettings()
    logging: LoggingSettings = LoggingSettings()


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Top-level YAML must be a mapping, got: {type(data).__name__}"
        )
    return data


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if len(parts) < 2:
        raise ConfigError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _apply_env_overrides(
    config: MutableMapping[str, Any], env_prefix: str, environ: Mapping[str, str]
) -> None:
    for name, value in environ.items():
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        cur: MutableMapping[str, Any] = config
        for segment in segments[:-1]:
            next_value = cur.setdefault(segment, {})
            if not isinstance(next_value, dict):
                dotted = ".".join(segments)
                raise ConfigError(
                    f"Configuration key path does not point to a mapping: {dotted}"
                )
            cur = next_value

        # Pydantic handles type coercion/validation later.
        cur[segments[-1]] = value


def load_settings(
    path: str | Path | None = None,
    *,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    environ: Mapping[str, str] | None = None,
) -> SyncSettings:
    """Load settings from an optional YAML file plus environment overrides.

    ``ESGSYNC__REALTIME__DEBOUNCE=250ms`` overrides ``realtime.debounce``.

    Raises:
        ConfigError: When the file is missing or the result does not validate
    """
    config = _read_yaml_config(Path(path)) if path is not None else {}
    _apply_env_overrides(config, env_prefix, os.environ if environ is None else environ)
    try:
        return SyncSettings.model_validate(config)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
