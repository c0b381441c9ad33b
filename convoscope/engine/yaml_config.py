"""YAML configuration loader.

Overlays a YAML file on top of the environment-derived
:class:`LiveConfig`. Keys in the file win over env vars.

Example YAML:
    server:
      base_url: http://127.0.0.1:19898
      api_prefix: /api
      request_timeout_seconds: 30

    live:
      page_size: 50
      channel_refresh_seconds: 10
      link_active_seconds: 3

    stream:
      initial_retry_seconds: 1
      max_retry_seconds: 30
      backoff_multiplier: 2

    logging:
      level: DEBUG
      file: ~/.convoscope/convoscope.log
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import LiveConfig

logger = logging.getLogger(__name__)

# Sections are grouping only; their keys map straight onto LiveConfig fields.
_SECTIONS = ("server", "live", "stream")
_LOGGING_KEYS = {"level": "log_level", "file": "log_file"}


def _flatten(raw: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for section in _SECTIONS:
        body = raw.get(section) or {}
        if not isinstance(body, dict):
            raise ValueError(f"'{section}' section must be a mapping")
        values.update(body)

    log_raw = raw.get("logging") or {}
    if not isinstance(log_raw, dict):
        raise ValueError("'logging' section must be a mapping")
    for key, value in log_raw.items():
        if key not in _LOGGING_KEYS:
            raise ValueError(f"Unknown logging key: {key}")
        if key == "file" and value:
            value = str(Path(value).expanduser())
        values[_LOGGING_KEYS[key]] = value

    unknown = sorted(set(raw) - set(_SECTIONS) - {"logging"})
    if unknown:
        logger.warning("Ignoring unknown config section(s): %s", ", ".join(unknown))
    return values


def load_yaml_config(path: str | Path, base: LiveConfig | None = None) -> LiveConfig:
    """Load ``path`` and overlay it on ``base`` (default: from env)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    values = _flatten(raw)
    config = (base or LiveConfig.from_env()).with_overrides(values)
    logger.info(
        "Parsed YAML config %s: %s",
        path.name, ", ".join(sorted(values)) if values else "(empty)",
    )
    return config
