"""Tenant configuration for outagesync."""

from __future__ import annotations

import dataclasses
import json
import math
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from outagesync.exceptions import ConfigurationError

_FEEDS = frozenset({"supabase", "mqtt"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _tenant_env_prefix(tenant_id: str) -> str:
    return "OUTAGESYNC_" + tenant_id.upper().replace("-", "_").replace(".", "_") + "_"


@dataclasses.dataclass(frozen=True)
class ColumnMapping:
    """Column names used to read a subscriber row.

    Only non-personal columns are mapped; names, addresses and account
    identifiers never leave the data source through this library.
    """

    latitude: str = "latitude"
    longitude: str = "longitude"
    status: str = "status"
    updated_at: str = "updated_at"


@dataclasses.dataclass(frozen=True)
class StatusFilter:
    """Which rows count as active (down) for this tenant."""

    status_field: str = "status"
    active_value: str = "Offline"
    require_coordinates: bool = True


@dataclasses.dataclass(frozen=True)
class MqttFeedConfig:
    """Broker settings for the MQTT change feed.

    Parameters
    ----------
    host : str or None
        Broker hostname. ``None`` disables the MQTT feed.
    port : int
        Broker port.
    topic_prefix : str
        Change events for table ``t`` are read from ``<topic_prefix>/t``.
    username, password : str or None
        Optional broker credentials.
    tls : bool
        Wrap the connection in TLS.
    keepalive : int
        MQTT keepalive in seconds.
    """

    host: str | None = None
    port: int = 8883
    topic_prefix: str = "outages"
    username: str | None = None
    password: str | None = None
    tls: bool = True
    keepalive: int = 120


@dataclasses.dataclass(frozen=True)
class TenantConfig:
    """Per-tenant synchronization configuration.

    Parameters
    ----------
    tenant_id : str
        Tenant identifier (e.g. ``"freedomfiber"``).
    name : str
        Display name.
    supabase_url : str or None
        Project URL of the tenant's data source.
    supabase_key : str or None
        Anonymous (public) API key.
    table : str
        Table holding subscriber rows.
    columns : ColumnMapping
        Column names for coordinates, status and timestamp.
    filters : StatusFilter
        Active-status filter applied to bulk queries and change events.
    multi_tenant : bool
        The database is shared between tenants; add a
        ``tenant_column = tenant_id`` filter to every query and channel.
    tenant_column : str
        Column holding the tenant id in shared databases.
    refresh_interval_ms : int
        Polling interval in milliseconds, used only in polling mode.
    subscribe_timeout : float
        Seconds to wait for the change feed to acknowledge a subscription
        before falling back to polling.
    realtime_enabled : bool
        Try a push subscription at all.
    feed : str
        Change-feed transport: ``"supabase"`` or ``"mqtt"``.
    mqtt : MqttFeedConfig
        Broker settings when ``feed == "mqtt"``.
    map_center : tuple of float
        ``(longitude, latitude)`` the demo dataset is scattered around.
    demo_fallback : bool
        Install a synthetic demo dataset when the initial load fails.
    demo_count : int
        Number of demo points.
    coordinate_precision : int
        Decimal places used to canonicalize coordinates for matching.
    request_timeout : float
        Total timeout for one bulk query, in seconds.
    """

    tenant_id: str = "default"
    name: str = ""
    supabase_url: str | None = None
    supabase_key: str | None = None
    table: str = "mfs"
    columns: ColumnMapping = dataclasses.field(default_factory=ColumnMapping)
    filters: StatusFilter = dataclasses.field(default_factory=StatusFilter)
    multi_tenant: bool = False
    tenant_column: str = "tenant_id"
    refresh_interval_ms: int = 60_000
    subscribe_timeout: float = 10.0
    realtime_enabled: bool = True
    feed: str = "supabase"
    mqtt: MqttFeedConfig = dataclasses.field(default_factory=MqttFeedConfig)
    map_center: tuple[float, float] = (-87.9169, 34.0876)
    demo_fallback: bool = True
    demo_count: int = 25
    coordinate_precision: int = 7
    request_timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        """Whether a data source URL and key are both present."""
        return bool(self.supabase_url and self.supabase_key)

    @property
    def refresh_interval(self) -> float:
        """Polling interval in seconds."""
        return self.refresh_interval_ms / 1000.0

    @property
    def tenant_filters(self) -> dict[str, str]:
        """Equality filters isolating this tenant in a shared database."""
        if not self.multi_tenant:
            return {}
        return {self.tenant_column: self.tenant_id}

    def validate(self) -> list[str]:
        """Check the configuration.

        Returns
        -------
        list of str
            Non-fatal warnings.

        Raises
        ------
        ConfigurationError
            On the first batch of hard errors (all listed in the message).
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not self.tenant_id.strip():
            errors.append("tenant_id must be non-empty")
        if not self.table.strip():
            errors.append("table must be non-empty")
        for field in dataclasses.fields(self.columns):
            if not str(getattr(self.columns, field.name)).strip():
                errors.append(f"columns.{field.name} must be non-empty")
        if not self.filters.status_field.strip():
            errors.append("filters.status_field must be non-empty")
        if self.refresh_interval_ms <= 0:
            errors.append("refresh_interval_ms must be positive")
        elif not 10_000 <= self.refresh_interval_ms <= 300_000:
            warnings.append("refresh_interval_ms should be between 10 seconds and 5 minutes")
        if self.feed not in _FEEDS:
            errors.append(f"feed must be one of {sorted(_FEEDS)}, got {self.feed!r}")
        elif self.feed == "mqtt" and self.realtime_enabled and not self.mqtt.host:
            errors.append("feed 'mqtt' requires mqtt.host")

        lng, lat = self.map_center
        if not (math.isfinite(lng) and math.isfinite(lat) and -180 <= lng <= 180 and -90 <= lat <= 90):
            errors.append(f"map_center out of range: {self.map_center!r}")

        if not self.is_configured:
            warnings.append("supabase_url/supabase_key missing; only demo data will be shown")

        if errors:
            raise ConfigurationError(f"Invalid configuration for tenant {self.tenant_id!r}: " + "; ".join(errors))
        return warnings

    @classmethod
    def from_env(cls, tenant_id: str | None = None, **overrides: Any) -> TenantConfig:
        """Create configuration from environment variables.

        Per-tenant variables (``OUTAGESYNC_<TENANT>_SUPABASE_URL``) take
        precedence over the global ones (``OUTAGESYNC_SUPABASE_URL``).
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        tenant_id : str or None
            Tenant to configure. Defaults to ``OUTAGESYNC_TENANT_ID`` and
            then ``"default"``.
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TenantConfig
            Populated configuration.
        """
        env = os.environ
        tenant = tenant_id or env.get("OUTAGESYNC_TENANT_ID") or "default"
        prefix = _tenant_env_prefix(tenant)

        def lookup(name: str) -> str | None:
            return env.get(prefix + name) or env.get("OUTAGESYNC_" + name)

        config_kwargs: dict[str, Any] = {"tenant_id": tenant}

        _ENV_CONFIG_MAP = {
            "SUPABASE_URL": "supabase_url",
            "SUPABASE_KEY": "supabase_key",
            "TENANT_NAME": "name",
            "TABLE": "table",
            "FEED": "feed",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = lookup(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        interval_env = lookup("REFRESH_INTERVAL_MS")
        if interval_env is not None and "refresh_interval_ms" not in overrides:
            config_kwargs["refresh_interval_ms"] = int(interval_env)

        timeout_env = lookup("SUBSCRIBE_TIMEOUT")
        if timeout_env is not None and "subscribe_timeout" not in overrides:
            config_kwargs["subscribe_timeout"] = float(timeout_env)

        if "realtime_enabled" not in overrides:
            config_kwargs["realtime_enabled"] = _env_bool(lookup("REALTIME_ENABLED"), True)
        if "multi_tenant" not in overrides:
            config_kwargs["multi_tenant"] = _env_bool(lookup("MULTI_TENANT"), False)
        if "demo_fallback" not in overrides:
            config_kwargs["demo_fallback"] = _env_bool(lookup("DEMO_FALLBACK"), True)

        active_value = lookup("ACTIVE_VALUE")
        if active_value is not None and "filters" not in overrides:
            config_kwargs["filters"] = StatusFilter(active_value=active_value)

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "MQTT_HOST": "host",
            "MQTT_TOPIC_PREFIX": "topic_prefix",
            "MQTT_USERNAME": "username",
            "MQTT_PASSWORD": "password",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = lookup(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val
        port_env = lookup("MQTT_PORT")
        if port_env is not None:
            mqtt_kwargs["port"] = int(port_env)
        tls_env = lookup("MQTT_TLS")
        if tls_env is not None:
            mqtt_kwargs["tls"] = _env_bool(tls_env, True)

        # Allow overriding mqtt fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttFeedConfig):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)
        if mqtt_kwargs:
            config_kwargs["mqtt"] = MqttFeedConfig(**mqtt_kwargs)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **overrides: Any) -> TenantConfig:
        """Create configuration from a tenant JSON document.

        The layout mirrors the tenant files served next to the map::

            {
              "tenant": {"id": "isp1", "name": "Freedom Fiber"},
              "supabase": {
                "url": "...", "anonKey": "...",
                "tables": {"subscribers": "mfs", "columns": {...}},
                "filters": {"statusField": "status", "offlineValue": "Offline",
                            "requireCoordinates": true},
                "multiTenant": false
              },
              "refreshInterval": 60000,
              "map": {"center": [-87.9, 34.1]},
              "realtime": {"enabled": true, "feed": "supabase", "subscribeTimeout": 10},
              "mqtt": {"host": "...", "port": 8883, "topicPrefix": "outages"}
            }
        """
        tenant = data.get("tenant") or {}
        supabase = data.get("supabase") or {}
        tables = supabase.get("tables") or {}
        raw_columns = tables.get("columns") or {}
        raw_filters = supabase.get("filters") or {}
        realtime = data.get("realtime") or {}
        raw_mqtt = data.get("mqtt") or {}
        map_section = data.get("map") or {}

        defaults_columns = ColumnMapping()
        columns = ColumnMapping(
            latitude=raw_columns.get("latitude", defaults_columns.latitude),
            longitude=raw_columns.get("longitude", defaults_columns.longitude),
            status=raw_columns.get("status", defaults_columns.status),
            updated_at=raw_columns.get("updated_at", raw_columns.get("updatedAt", defaults_columns.updated_at)),
        )
        defaults_filters = StatusFilter()
        filters = StatusFilter(
            status_field=raw_filters.get("statusField", defaults_filters.status_field),
            active_value=raw_filters.get("offlineValue", raw_filters.get("activeValue", defaults_filters.active_value)),
            require_coordinates=bool(raw_filters.get("requireCoordinates", defaults_filters.require_coordinates)),
        )

        config_kwargs: dict[str, Any] = {"columns": columns, "filters": filters}
        if "id" in tenant:
            config_kwargs["tenant_id"] = str(tenant["id"])
        if "name" in tenant:
            config_kwargs["name"] = str(tenant["name"])
        if supabase.get("url"):
            config_kwargs["supabase_url"] = supabase["url"]
        key = supabase.get("anonKey") or supabase.get("key")
        if key:
            config_kwargs["supabase_key"] = key
        if tables.get("subscribers"):
            config_kwargs["table"] = tables["subscribers"]
        if "multiTenant" in supabase:
            config_kwargs["multi_tenant"] = bool(supabase["multiTenant"])
        if "refreshInterval" in data:
            config_kwargs["refresh_interval_ms"] = int(data["refreshInterval"])
        if "enabled" in realtime:
            config_kwargs["realtime_enabled"] = bool(realtime["enabled"])
        if "feed" in realtime:
            config_kwargs["feed"] = str(realtime["feed"])
        if "subscribeTimeout" in realtime:
            config_kwargs["subscribe_timeout"] = float(realtime["subscribeTimeout"])
        center = map_section.get("center")
        if isinstance(center, (list, tuple)) and len(center) == 2:
            config_kwargs["map_center"] = (float(center[0]), float(center[1]))
        if raw_mqtt:
            defaults_mqtt = MqttFeedConfig()
            config_kwargs["mqtt"] = MqttFeedConfig(
                host=raw_mqtt.get("host"),
                port=int(raw_mqtt.get("port", defaults_mqtt.port)),
                topic_prefix=raw_mqtt.get("topicPrefix", defaults_mqtt.topic_prefix),
                username=raw_mqtt.get("username"),
                password=raw_mqtt.get("password"),
                tls=bool(raw_mqtt.get("tls", defaults_mqtt.tls)),
                keepalive=int(raw_mqtt.get("keepalive", defaults_mqtt.keepalive)),
            )

        config_kwargs.update(overrides)
        return cls(**config_kwargs)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> TenantConfig:
        """Load a tenant JSON file (see :meth:`from_mapping`)."""
        file_path = Path(path)
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read tenant config {file_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Tenant config {file_path} is not a JSON object")
        return cls.from_mapping(data, **overrides)
