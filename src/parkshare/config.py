"""Engine configuration for parkshare."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from parkshare.exceptions import ParkShareConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker settings for the MQTT notification dispatcher.

    ``host`` left as ``None`` disables the dispatcher.
    """

    host: str | None = None
    port: int = 1883
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "parkshare/notifications"
    keepalive: int = 60
    use_tls: bool = False


@dataclasses.dataclass(frozen=True)
class ParkShareConfig:
    """Engine configuration.

    Parameters
    ----------
    walk_in_lease_minutes : int
        Fixed lease for walk-in pins, whatever the caller requests.
    leaving_soon_min_minutes : int
        Smallest accepted ``will_leave_in_minutes`` for leaving-soon pins.
    leaving_soon_max_minutes : int
        Largest accepted ``will_leave_in_minutes`` for leaving-soon pins.
    confirmer_base_points : int
        Base reward for the user who claims a spot.
    owner_base_points : int
        Base reward for the user whose spot was claimed.
    premium_multiplier : float
        Reward multiplier for premium accounts.
    special_event : bool
        When set, premium accounts use ``special_event_multiplier`` instead.
    special_event_multiplier : float
        Multiplier used during special events (3x by default).
    default_reliability : int
        Reliability score given to freshly provisioned accounts.
    ledger_transaction_attempts : int
        Attempts for ledger read-modify-write transactions that lose a race.
        Claims are never retried regardless of this value.
    reward_retry_attempts : int
        Attempts for a reward application hitting transient store errors.
    reward_retry_delay : float
        Initial backoff in seconds between reward attempts (doubles each time).
    expiry_sweep_interval : float
        Seconds between realtime expiry sweeps.  ``0`` disables the sweeper.
    reward_drain_interval : float
        Seconds between outbox drains.  ``0`` disables the drainer.
    max_geohash_cells : int
        Upper bound of geohash cells used to cover a query radius before
        falling back to a full scan.
    default_radius_m : float
        Radius used when callers do not pass one.
    webhook_url : str or None
        Endpoint for the webhook notification dispatcher.
    webhook_token : str or None
        Bearer token sent with webhook deliveries.
    webhook_timeout : float
        Total request timeout for webhook deliveries.
    mqtt : MqttSettings
        MQTT notification dispatcher settings.
    """

    walk_in_lease_minutes: int = 10
    leaving_soon_min_minutes: int = 2
    leaving_soon_max_minutes: int = 60
    confirmer_base_points: int = 5
    owner_base_points: int = 10
    premium_multiplier: float = 2.0
    special_event: bool = False
    special_event_multiplier: float = 3.0
    default_reliability: int = 50
    ledger_transaction_attempts: int = 5
    reward_retry_attempts: int = 3
    reward_retry_delay: float = 0.5
    expiry_sweep_interval: float = 15.0
    reward_drain_interval: float = 60.0
    max_geohash_cells: int = 16
    default_radius_m: float = 5000.0
    webhook_url: str | None = None
    webhook_token: str | None = None
    webhook_timeout: float = 10.0
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if self.walk_in_lease_minutes <= 0:
            raise ParkShareConfigError("walk_in_lease_minutes must be positive")
        if not 0 < self.leaving_soon_min_minutes <= self.leaving_soon_max_minutes:
            raise ParkShareConfigError("leaving-soon lease bounds must satisfy 0 < min <= max")
        if self.premium_multiplier < 1 or self.special_event_multiplier < 1:
            raise ParkShareConfigError("reward multipliers must be at least 1")
        if not 0 <= self.default_reliability <= 100:
            raise ParkShareConfigError("default_reliability must be within [0, 100]")
        if self.ledger_transaction_attempts < 1 or self.reward_retry_attempts < 1:
            raise ParkShareConfigError("attempt counts must be at least 1")
        if self.max_geohash_cells < 1:
            raise ParkShareConfigError("max_geohash_cells must be at least 1")

    @property
    def reward_multiplier(self) -> float:
        """Multiplier applied to premium rewards right now."""
        return self.special_event_multiplier if self.special_event else self.premium_multiplier

    @classmethod
    def from_env(cls, **overrides: Any) -> ParkShareConfig:
        """Create configuration from environment variables.

        Reads ``PARKSHARE_*`` variables.  Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        ParkShareConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "PARKSHARE_MQTT_HOST": ("host", str),
            "PARKSHARE_MQTT_PORT": ("port", int),
            "PARKSHARE_MQTT_USERNAME": ("username", str),
            "PARKSHARE_MQTT_PASSWORD": ("password", str),
            "PARKSHARE_MQTT_TOPIC_PREFIX": ("topic_prefix", str),
            "PARKSHARE_MQTT_KEEPALIVE": ("keepalive", int),
        }
        try:
            for env_key, (field_name, cast) in _ENV_MQTT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    mqtt_kwargs[field_name] = cast(val)
        except ValueError as exc:
            raise ParkShareConfigError(f"Invalid MQTT environment value: {exc}") from exc
        mqtt_kwargs["use_tls"] = _env_bool(env.get("PARKSHARE_MQTT_TLS"), False)

        # Allow overriding MQTT fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        _ENV_CONFIG_MAP = {
            "PARKSHARE_WALK_IN_LEASE_MINUTES": ("walk_in_lease_minutes", int),
            "PARKSHARE_LEAVING_SOON_MIN_MINUTES": ("leaving_soon_min_minutes", int),
            "PARKSHARE_LEAVING_SOON_MAX_MINUTES": ("leaving_soon_max_minutes", int),
            "PARKSHARE_CONFIRMER_BASE_POINTS": ("confirmer_base_points", int),
            "PARKSHARE_OWNER_BASE_POINTS": ("owner_base_points", int),
            "PARKSHARE_PREMIUM_MULTIPLIER": ("premium_multiplier", float),
            "PARKSHARE_SPECIAL_EVENT_MULTIPLIER": ("special_event_multiplier", float),
            "PARKSHARE_DEFAULT_RELIABILITY": ("default_reliability", int),
            "PARKSHARE_LEDGER_TRANSACTION_ATTEMPTS": ("ledger_transaction_attempts", int),
            "PARKSHARE_REWARD_RETRY_ATTEMPTS": ("reward_retry_attempts", int),
            "PARKSHARE_REWARD_RETRY_DELAY": ("reward_retry_delay", float),
            "PARKSHARE_EXPIRY_SWEEP_INTERVAL": ("expiry_sweep_interval", float),
            "PARKSHARE_REWARD_DRAIN_INTERVAL": ("reward_drain_interval", float),
            "PARKSHARE_MAX_GEOHASH_CELLS": ("max_geohash_cells", int),
            "PARKSHARE_DEFAULT_RADIUS_M": ("default_radius_m", float),
            "PARKSHARE_WEBHOOK_URL": ("webhook_url", str),
            "PARKSHARE_WEBHOOK_TOKEN": ("webhook_token", str),
            "PARKSHARE_WEBHOOK_TIMEOUT": ("webhook_timeout", float),
        }
        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}
        for env_key, (field_name, cast) in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = cast(val)
            except ValueError as exc:
                raise ParkShareConfigError(f"Invalid value for {env_key}: {val!r}") from exc

        if "special_event" not in overrides:
            config_kwargs["special_event"] = _env_bool(env.get("PARKSHARE_SPECIAL_EVENT"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
