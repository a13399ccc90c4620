"""Runtime configuration for feverwatch."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from feverwatch.exceptions import FeverWatchConfigError
from feverwatch.models.notification import DeliveryPolicy


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _convert(env_key: str, raw: str, kind: type) -> Any:
    try:
        if kind is bool:
            return _env_bool(raw, False)
        return kind(raw)
    except ValueError as exc:
        raise FeverWatchConfigError(f"Invalid value for {env_key}: {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Device-side MQTT broker connection.

    Devices publish to ``<topic_prefix>/device/<device_id>/temperature/reading``,
    ``.../status`` and ``.../alerts``.
    """

    enabled: bool = True
    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str = "feverwatch-backend"
    topic_prefix: str = "botcareu"
    keepalive: int = 60

    @classmethod
    def from_env(cls, **overrides: Any) -> MqttSettings:
        """Create MQTT settings from ``FEVERWATCH_MQTT_*`` variables."""
        env = os.environ
        _ENV_MAP: dict[str, tuple[str, type]] = {
            "FEVERWATCH_MQTT_ENABLED": ("enabled", bool),
            "FEVERWATCH_MQTT_HOST": ("host", str),
            "FEVERWATCH_MQTT_PORT": ("port", int),
            "FEVERWATCH_MQTT_USERNAME": ("username", str),
            "FEVERWATCH_MQTT_PASSWORD": ("password", str),
            "FEVERWATCH_MQTT_CLIENT_ID": ("client_id", str),
            "FEVERWATCH_MQTT_TOPIC_PREFIX": ("topic_prefix", str),
            "FEVERWATCH_MQTT_KEEPALIVE": ("keepalive", int),
        }
        kwargs: dict[str, Any] = {}
        for env_key, (field_name, kind) in _ENV_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                kwargs[field_name] = _convert(env_key, val, kind)
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class FeverWatchConfig:
    """Pipeline configuration shared by the server and the client.

    Parameters
    ----------
    fever_threshold : float
        Default fever threshold in °C. A device may override it.
    min_temperature, max_temperature : float
        Physiologically plausible band; readings outside it are rejected.
    max_retries : int
        Delivery attempts per channel before it is marked exhausted.
    retry_base_delay, retry_max_delay : float
        Channel retry backoff (``base * 2**attempt``, capped).
    delivery_timeout : float
        Per-attempt delivery timeout in seconds. Distinct from the backoff.
    critical_delivery_policy : DeliveryPolicy
        Whether ``critical`` notifications count as delivered when any
        channel succeeds (``any``) or only when every channel does (``all``).
    auth_timeout : float
        Seconds a new gateway connection has to authenticate.
    session_queue_size : int
        Per-session outbound queue bound. A session whose queue overflows
        is dropped.
    session_send_timeout : float
        Seconds a single outbound frame may take before the session is dropped.
    reconnect_base_delay, reconnect_max_delay : float
        Client reconnect backoff.
    reconnect_max_attempts : int
        Client reconnect budget before ``ConnectionExhausted``.
    snapshot_interval : float
        Client full-snapshot polling interval in seconds.
    low_battery_threshold, critical_battery_threshold : int
        Battery levels (percent) that raise low-battery alerts.
    offline_after : float
        Seconds of device silence after which it is marked offline.
    push_webhook_url, email_webhook_url, sms_webhook_url : str or None
        Delivery endpoints. An unset URL leaves that channel unconfigured.
    server_host, server_port : str, int
        Gateway bind address.
    ws_url, api_base_url : str
        Client-side gateway and snapshot endpoints.
    mqtt : MqttSettings
        Device broker settings.
    """

    fever_threshold: float = 37.5
    min_temperature: float = 30.0
    max_temperature: float = 45.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    delivery_timeout: float = 10.0
    critical_delivery_policy: DeliveryPolicy = DeliveryPolicy.ANY
    auth_timeout: float = 10.0
    session_queue_size: int = 100
    session_send_timeout: float = 5.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 5
    snapshot_interval: float = 30.0
    low_battery_threshold: int = 20
    critical_battery_threshold: int = 10
    offline_after: float = 300.0
    push_webhook_url: str | None = None
    email_webhook_url: str | None = None
    sms_webhook_url: str | None = None
    server_host: str = "0.0.0.0"  # noqa: S104
    server_port: int = 3001
    ws_url: str = "ws://localhost:3001/ws"
    api_base_url: str = "http://localhost:3001"
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if self.min_temperature >= self.max_temperature:
            raise FeverWatchConfigError("min_temperature must be below max_temperature")
        if self.max_retries < 1:
            raise FeverWatchConfigError("max_retries must be at least 1")
        if self.reconnect_max_attempts < 0:
            raise FeverWatchConfigError("reconnect_max_attempts must not be negative")
        if self.session_queue_size < 1:
            raise FeverWatchConfigError("session_queue_size must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> FeverWatchConfig:
        """Create configuration from environment variables.

        Reads ``FEVERWATCH_*`` variables; MQTT settings come from
        ``FEVERWATCH_MQTT_*``. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FeverWatchConfig
            Populated configuration.
        """
        env = os.environ

        # Allow overriding MQTT fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, MqttSettings):
            mqtt = mqtt_overrides
        else:
            mqtt = MqttSettings.from_env(**(mqtt_overrides or {}))

        _ENV_CONFIG_MAP: dict[str, tuple[str, type]] = {
            "FEVERWATCH_FEVER_THRESHOLD": ("fever_threshold", float),
            "FEVERWATCH_MIN_TEMPERATURE": ("min_temperature", float),
            "FEVERWATCH_MAX_TEMPERATURE": ("max_temperature", float),
            "FEVERWATCH_MAX_RETRIES": ("max_retries", int),
            "FEVERWATCH_RETRY_BASE_DELAY": ("retry_base_delay", float),
            "FEVERWATCH_RETRY_MAX_DELAY": ("retry_max_delay", float),
            "FEVERWATCH_DELIVERY_TIMEOUT": ("delivery_timeout", float),
            "FEVERWATCH_AUTH_TIMEOUT": ("auth_timeout", float),
            "FEVERWATCH_SESSION_QUEUE_SIZE": ("session_queue_size", int),
            "FEVERWATCH_SESSION_SEND_TIMEOUT": ("session_send_timeout", float),
            "FEVERWATCH_RECONNECT_BASE_DELAY": ("reconnect_base_delay", float),
            "FEVERWATCH_RECONNECT_MAX_DELAY": ("reconnect_max_delay", float),
            "FEVERWATCH_RECONNECT_MAX_ATTEMPTS": ("reconnect_max_attempts", int),
            "FEVERWATCH_SNAPSHOT_INTERVAL": ("snapshot_interval", float),
            "FEVERWATCH_LOW_BATTERY_THRESHOLD": ("low_battery_threshold", int),
            "FEVERWATCH_CRITICAL_BATTERY_THRESHOLD": ("critical_battery_threshold", int),
            "FEVERWATCH_OFFLINE_AFTER": ("offline_after", float),
            "FEVERWATCH_PUSH_WEBHOOK_URL": ("push_webhook_url", str),
            "FEVERWATCH_EMAIL_WEBHOOK_URL": ("email_webhook_url", str),
            "FEVERWATCH_SMS_WEBHOOK_URL": ("sms_webhook_url", str),
            "FEVERWATCH_SERVER_HOST": ("server_host", str),
            "FEVERWATCH_SERVER_PORT": ("server_port", int),
            "FEVERWATCH_WS_URL": ("ws_url", str),
            "FEVERWATCH_API_BASE_URL": ("api_base_url", str),
        }
        config_kwargs: dict[str, Any] = {"mqtt": mqtt}
        for env_key, (field_name, kind) in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _convert(env_key, val, kind)

        policy_env = env.get("FEVERWATCH_CRITICAL_DELIVERY_POLICY")
        if policy_env is not None and "critical_delivery_policy" not in overrides:
            try:
                config_kwargs["critical_delivery_policy"] = DeliveryPolicy(policy_env.strip().lower())
            except ValueError as exc:
                raise FeverWatchConfigError(
                    f"Invalid value for FEVERWATCH_CRITICAL_DELIVERY_POLICY: {policy_env!r}"
                ) from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
