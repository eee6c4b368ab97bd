"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Example::

    {
      "sinks": [
        {"path": "/var/log/app/app.log", "period": "daily", "count": 7, "gzip": true}
      ],
      "logging": {"level": "${APP_LOG_LEVEL:-info}"}
    }
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import orjson

from rotating_log_sink.models import DEFAULT_PERIOD, RotationSpec

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

DEFAULT_MAX_DELAY_MS = 2147483647


@dataclass
class SinkConfig:
    """One rotating file."""

    path: str = ""
    period: str = DEFAULT_PERIOD
    count: int = 0
    gzip: bool = False


@dataclass
class SchedulerConfig:
    """Timer settings shared by every sink."""

    max_delay_ms: int = DEFAULT_MAX_DELAY_MS


@dataclass
class FlushConfig:
    """File flush settings."""

    every_n_writes: int = 1


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes its own operational logs
    to a rotating sink in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/rotating-log-sink/app.log"
    period: str = DEFAULT_PERIOD
    count: int = 5
    gzip: bool = False


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)


@dataclass
class AppConfig:
    """Top-level application configuration."""

    sinks: list[SinkConfig] = field(default_factory=list)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _coerce_scalars(raw: dict[str, Any], ints: tuple[str, ...], bools: tuple[str, ...]) -> dict[str, Any]:
    """Turn interpolated strings back into ints/bools for the named keys."""
    out = dict(raw)
    for key in ints:
        if isinstance(out.get(key), str) and out[key].strip().lstrip("-").isdigit():
            out[key] = int(out[key])
    for key in bools:
        if isinstance(out.get(key), str) and out[key].lower() in ("true", "false"):
            out[key] = out[key].lower() == "true"
    return out


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = raw.get("logging", {})
    log_file_raw = logging_raw.get("file", {})

    return AppConfig(
        sinks=[SinkConfig(**_pick(SinkConfig, s)) for s in raw.get("sinks", [])],
        scheduler=SchedulerConfig(**_pick(SchedulerConfig, raw.get("scheduler", {}))),
        flush=FlushConfig(**_pick(FlushConfig, raw.get("flush", {}))),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            format=logging_raw.get("format", "json"),
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
        ),
    )


def _normalize(raw: dict[str, Any]) -> dict[str, Any]:
    """Restore scalar types that ``${VAR}`` interpolation turned into strings."""
    out = dict(raw)
    if isinstance(raw.get("sinks"), list):
        out["sinks"] = [
            _coerce_scalars(s, ints=("count",), bools=("gzip",)) if isinstance(s, dict) else s
            for s in raw["sinks"]
        ]
    if isinstance(raw.get("scheduler"), dict):
        out["scheduler"] = _coerce_scalars(raw["scheduler"], ints=("max_delay_ms",), bools=())
    if isinstance(raw.get("logging"), dict) and isinstance(raw["logging"].get("file"), dict):
        out["logging"] = dict(raw["logging"])
        out["logging"]["file"] = _coerce_scalars(
            raw["logging"]["file"], ints=("count",), bools=("enabled", "gzip")
        )
    return out


def validate_sinks(cfg: AppConfig) -> None:
    """Check every period/count pair with the same rules a sink applies.

    Also rejects a scheduler cap below one millisecond, which command-line
    overrides can set without passing through the schema.

    Raises
    ------
    ValueError
        Naming the first offending sink.
    """
    for i, sink in enumerate(cfg.sinks):
        try:
            RotationSpec.parse(sink.period, sink.count)
        except ValueError as exc:
            raise ValueError(f"sinks[{i}] ({sink.path}): {exc}") from exc
    if cfg.logging.file.enabled:
        try:
            RotationSpec.parse(cfg.logging.file.period, cfg.logging.file.count)
        except ValueError as exc:
            raise ValueError(f"logging.file: {exc}") from exc
    if cfg.scheduler.max_delay_ms < 1:
        raise ValueError(
            f"scheduler.max_delay_ms must be >= 1, got {cfg.scheduler.max_delay_ms}"
        )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to the JSON config file.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to the schema shipped with
        the package.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved or a sink's period or
        count is invalid.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw_bytes = Path(path).read_bytes()
    raw: dict[str, Any] = orjson.loads(raw_bytes)

    interpolated = _normalize(_walk_and_interpolate(raw, overrides=overrides))

    sp = Path(schema_path) if schema_path else SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    cfg = _dict_to_config(interpolated)
    validate_sinks(cfg)
    return cfg
