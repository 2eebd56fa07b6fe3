from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from sdcontroller.src.errors import ConfigError


@dataclass(frozen=True)
class EngineConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        log_level:                 Root logger level name.
        health_port:               Port of the health/metrics HTTP server.
        sd_group / sd_version / sd_plural:
                                   Coordinates of the SelectiveDeployment
                                   custom resource.
        watch_timeout_seconds:     Server-side timeout of each watch stream.
        max_lookup_retries:        Requeues allowed for a key whose cache
                                   lookup fails before it is dropped.
        retry_base_delay_seconds / retry_max_delay_seconds:
                                   Exponential backoff bounds of the queue.
        dispatcher:                ``module:factory`` path of the dispatcher,
                                   empty for the logging dispatcher.
    """

    log_level: str = "INFO"
    health_port: int = 8080
    sd_group: str = "apps.edgenet.io"
    sd_version: str = "v1alpha"
    sd_plural: str = "selectivedeployments"
    watch_timeout_seconds: int = 30
    max_lookup_retries: int = 5
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 30.0
    dispatcher: str = ""

    @property
    def sd_api_version(self) -> str:
        return f"{self.sd_group}/{self.sd_version}"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> EngineConfig:
    """Load controller config from the environment.

    Every variable is optional; malformed values raise :class:`ConfigError`
    so the process refuses to start instead of running half-configured.
    """
    values = env if env is not None else os.environ

    base_delay = env_float(values, "RETRY_BASE_DELAY_SECONDS", 0.005, minimum=0.0)
    max_delay = env_float(values, "RETRY_MAX_DELAY_SECONDS", 30.0, minimum=0.0)
    if max_delay < base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
        )

    return EngineConfig(
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        sd_group=_non_empty(values, "SD_GROUP", "apps.edgenet.io"),
        sd_version=_non_empty(values, "SD_VERSION", "v1alpha"),
        sd_plural=_non_empty(values, "SD_PLURAL", "selectivedeployments"),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        max_lookup_retries=env_int(values, "MAX_LOOKUP_RETRIES", 5, minimum=0),
        retry_base_delay_seconds=base_delay,
        retry_max_delay_seconds=max_delay,
        dispatcher=values.get("DISPATCHER", ""),
    )
