"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONVOSCOPE_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONVOSCOPE_"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class LiveConfig:
    """Live reconciliation engine configuration."""

    # Server
    base_url: str = "http://127.0.0.1:19898"
    api_prefix: str = "/api"
    request_timeout_seconds: float = 30.0

    # History pages; the server clamps anything above 100.
    page_size: int = 50

    # Channel list poll interval.
    channel_refresh_seconds: float = 10.0

    # Activity edges
    link_active_seconds: float = 3.0
    edge_tick_seconds: float = 0.25

    # Event stream reconnect backoff
    initial_retry_seconds: float = 1.0
    max_retry_seconds: float = 30.0
    backoff_multiplier: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        for name in (
            "request_timeout_seconds", "channel_refresh_seconds",
            "link_active_seconds", "edge_tick_seconds",
            "initial_retry_seconds", "max_retry_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )

    @classmethod
    def from_env(cls) -> LiveConfig:
        """Load configuration from CONVOSCOPE_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if overrides:
            logger.info(
                "LiveConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("LiveConfig.from_env: no CONVOSCOPE_* env vars set, using defaults")

        config = cls(
            base_url=os.getenv("CONVOSCOPE_BASE_URL", cls.base_url),
            api_prefix=os.getenv("CONVOSCOPE_API_PREFIX", cls.api_prefix),
            request_timeout_seconds=_env_float(
                "CONVOSCOPE_REQUEST_TIMEOUT", cls.request_timeout_seconds,
            ),
            page_size=_env_int("CONVOSCOPE_PAGE_SIZE", cls.page_size),
            channel_refresh_seconds=_env_float(
                "CONVOSCOPE_CHANNEL_REFRESH", cls.channel_refresh_seconds,
            ),
            link_active_seconds=_env_float(
                "CONVOSCOPE_LINK_ACTIVE", cls.link_active_seconds,
            ),
            edge_tick_seconds=_env_float(
                "CONVOSCOPE_EDGE_TICK", cls.edge_tick_seconds,
            ),
            initial_retry_seconds=_env_float(
                "CONVOSCOPE_RETRY_INITIAL", cls.initial_retry_seconds,
            ),
            max_retry_seconds=_env_float(
                "CONVOSCOPE_RETRY_MAX", cls.max_retry_seconds,
            ),
            backoff_multiplier=_env_float(
                "CONVOSCOPE_RETRY_BACKOFF", cls.backoff_multiplier,
            ),
            log_level=os.getenv("CONVOSCOPE_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("CONVOSCOPE_LOG_FILE") or None,
        )
        logger.info(
            "LiveConfig.from_env: base_url=%s page_size=%d log_level=%s",
            config.base_url, config.page_size, config.log_level,
        )
        return config

    def with_overrides(self, values: dict[str, Any]) -> LiveConfig:
        """Return a copy with ``values`` applied; unknown keys raise."""
        known = {f.name: f for f in fields(self)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")
        coerced: dict[str, Any] = {}
        for key, value in values.items():
            default = getattr(self, key)
            if value is None or isinstance(default, str) or default is None:
                coerced[key] = value
            elif isinstance(default, int) and not isinstance(default, bool):
                coerced[key] = int(value)
            else:
                coerced[key] = float(value)
        return replace(self, **coerced)
