"""Client configuration for pymaximax."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from pymaximax.exceptions import MaximaxConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: Mapping[str, str], key: str, cast: type[Any]) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise MaximaxConfigError(f"{key} must be a {cast.__name__}, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class CacheTtls:
    """Cache time-to-live per data class, in seconds.

    Fleet telemetry goes stale within seconds while a generated quote
    stays valid for half an hour, so each data class gets its own TTL.
    """

    default: float = 300.0
    fleet: float = 30.0
    truck: float = 30.0
    quotes: float = 1800.0
    campaigns: float = 60.0
    routes: float = 3600.0
    metrics: float = 300.0
    insights: float = 300.0
    realtime: float = 10.0


@dataclasses.dataclass(frozen=True)
class MaximaxConfig:
    """Coordinator configuration.

    Parameters
    ----------
    base_url : str
        Base URL of the MaxiMax REST API.
    push_url : str or None
        Push-update endpoint. ``ws://``/``wss://`` selects the WebSocket
        transport and ``mqtt://``/``mqtts://`` the MQTT transport (the URL
        path is the topic). Defaults to :attr:`base_url` with the scheme
        switched to WebSocket and ``/ws`` appended.
    realtime_enabled : bool
        Open the push channel on :meth:`Coordinator.initialize`.
    cache_ttl : CacheTtls
        Per data class TTLs.
    cache_sweep_interval : float or None
        Seconds between eager cache sweeps. ``None`` relies on lazy
        eviction only.
    max_concurrent : int
        Maximum number of queued fetches running at once.
    fetch_timeout : float or None
        Default seconds a queued fetch may run before it fails.
    channel_base_delay : float
        Delay before the first reconnection attempt; doubles each attempt.
    channel_max_attempts : int
        Reconnection attempts before ``reconnect-failed`` is emitted.
    channel_max_delay : float or None
        Upper bound for a single backoff delay. ``None`` leaves it uncapped.
    channel_heartbeat : float or None
        WebSocket ping interval / MQTT keepalive in seconds.
    poll_interval : float
        Seconds between fleet refreshes while the channel is exhausted.
    request_timeout : float
        Total HTTP timeout for a single REST call.
    """

    base_url: str = "https://api.maximax-advertising.com"
    push_url: str | None = None
    realtime_enabled: bool = True
    cache_ttl: CacheTtls = dataclasses.field(default_factory=CacheTtls)
    cache_sweep_interval: float | None = 60.0
    max_concurrent: int = 5
    fetch_timeout: float | None = 30.0
    channel_base_delay: float = 1.0
    channel_max_attempts: int = 5
    channel_max_delay: float | None = None
    channel_heartbeat: float | None = 30.0
    poll_interval: float = 5.0
    request_timeout: float = 15.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise MaximaxConfigError("max_concurrent must be >= 1")
        if self.channel_base_delay <= 0:
            raise MaximaxConfigError("channel_base_delay must be > 0")
        if self.channel_max_attempts < 0:
            raise MaximaxConfigError("channel_max_attempts must be >= 0")
        if self.poll_interval <= 0:
            raise MaximaxConfigError("poll_interval must be > 0")

    @property
    def push_endpoint(self) -> str:
        """Resolved push-update URL."""
        if self.push_url:
            return self.push_url
        url = self.base_url.rstrip("/")
        if url.startswith("https://"):
            url = "wss://" + url[len("https://") :]
        elif url.startswith("http://"):
            url = "ws://" + url[len("http://") :]
        return f"{url}/ws"

    @classmethod
    def from_env(cls, **overrides: Any) -> MaximaxConfig:
        """Create configuration from ``MAXIMAX_*`` environment variables.

        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        MaximaxConfig
            Populated configuration.
        """
        env = os.environ

        ttl_kwargs: dict[str, float] = {}
        for ttl_field in dataclasses.fields(CacheTtls):
            value = _env_number(env, f"MAXIMAX_TTL_{ttl_field.name.upper()}", float)
            if value is not None:
                ttl_kwargs[ttl_field.name] = value

        ttl_overrides = overrides.pop("cache_ttl", None)
        if isinstance(ttl_overrides, dict):
            ttl_kwargs.update(ttl_overrides)
        elif isinstance(ttl_overrides, CacheTtls):
            ttl_kwargs = dataclasses.asdict(ttl_overrides)

        config_kwargs: dict[str, Any] = {"cache_ttl": CacheTtls(**ttl_kwargs)}

        _ENV_STR_MAP = {
            "MAXIMAX_BASE_URL": "base_url",
            "MAXIMAX_PUSH_URL": "push_url",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_NUMBER_MAP: dict[str, tuple[str, type[Any]]] = {
            "MAXIMAX_MAX_CONCURRENT": ("max_concurrent", int),
            "MAXIMAX_FETCH_TIMEOUT": ("fetch_timeout", float),
            "MAXIMAX_CACHE_SWEEP_INTERVAL": ("cache_sweep_interval", float),
            "MAXIMAX_CHANNEL_BASE_DELAY": ("channel_base_delay", float),
            "MAXIMAX_CHANNEL_MAX_ATTEMPTS": ("channel_max_attempts", int),
            "MAXIMAX_CHANNEL_MAX_DELAY": ("channel_max_delay", float),
            "MAXIMAX_CHANNEL_HEARTBEAT": ("channel_heartbeat", float),
            "MAXIMAX_POLL_INTERVAL": ("poll_interval", float),
            "MAXIMAX_REQUEST_TIMEOUT": ("request_timeout", float),
        }
        for env_key, (field_name, cast) in _ENV_NUMBER_MAP.items():
            if field_name in overrides:
                continue
            value = _env_number(env, env_key, cast)
            if value is not None:
                config_kwargs[field_name] = value

        if "realtime_enabled" not in overrides:
            config_kwargs["realtime_enabled"] = _env_bool(env.get("MAXIMAX_REALTIME_ENABLED"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
