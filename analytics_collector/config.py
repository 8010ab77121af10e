"""
Collector configuration.

Settings come from the Lambda environment and are validated once per
container. Per-site behaviour lives on the Site record as SiteSettings.
"""

import os
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DAY_SECONDS = 24 * 60 * 60


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class SiteSettings(BaseModel):
    """Tracking switches stored on each Site."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    collect_geolocation: bool = True
    track_referrers: bool = True
    track_utm: bool = True
    track_devices: bool = True
    excluded_paths: List[str] = Field(default_factory=list)
    excluded_ips: List[str] = Field(default_factory=list)
    retention_days: int = Field(default=30, ge=1)

    def is_path_excluded(self, path: str) -> bool:
        path_lower = path.lower()
        return any(path_lower.startswith(prefix.lower()) for prefix in self.excluded_paths if prefix)

    def is_ip_excluded(self, ip: Optional[str]) -> bool:
        return bool(ip) and ip in self.excluded_ips


class Settings(BaseModel):
    """Process-wide settings for the collector Lambda."""

    model_config = ConfigDict(frozen=True)

    env: str = "dev"
    app_name: str = "analytics-collector"
    table_name: str
    salt_secret: str

    session_timeout_seconds: int = Field(default=1800, gt=0)
    goal_cache_ttl_seconds: int = Field(default=300, ge=0)
    site_cache_ttl_seconds: int = Field(default=300, ge=0)

    raw_event_ttl_days: int = Field(default=30, ge=1)
    hourly_aggregate_ttl_days: int = Field(default=90, ge=1)
    daily_aggregate_ttl_days: int = Field(default=730, ge=1)

    realtime_ttl_seconds: int = Field(default=600, gt=0)
    realtime_max_minutes: int = Field(default=10, gt=0)

    honor_dnt: bool = True
    geo_privacy_mode: bool = False
    auth_required: bool = False
    default_owner_id: str = "default"
    collect_endpoint: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        table_name = os.environ.get("TABLE_NAME")
        if not table_name:
            raise ValueError("TABLE_NAME environment variable not set")

        app_name = os.environ.get("APP_NAME", "analytics-collector")
        env = os.environ.get("ENV", "dev")

        return cls(
            env=env,
            app_name=app_name,
            table_name=table_name,
            salt_secret=os.environ.get("SALT_SECRET") or f"{app_name}-{env}",
            session_timeout_seconds=int(os.environ.get("SESSION_TIMEOUT_SECONDS", 1800)),
            goal_cache_ttl_seconds=int(os.environ.get("GOAL_CACHE_TTL_SECONDS", 300)),
            site_cache_ttl_seconds=int(os.environ.get("SITE_CACHE_TTL_SECONDS", 300)),
            raw_event_ttl_days=int(os.environ.get("RAW_EVENT_TTL_DAYS", 30)),
            hourly_aggregate_ttl_days=int(os.environ.get("HOURLY_AGGREGATE_TTL_DAYS", 90)),
            daily_aggregate_ttl_days=int(os.environ.get("DAILY_AGGREGATE_TTL_DAYS", 730)),
            realtime_ttl_seconds=int(os.environ.get("REALTIME_TTL_SECONDS", 600)),
            realtime_max_minutes=int(os.environ.get("REALTIME_MAX_MINUTES", 10)),
            honor_dnt=_env_bool("HONOR_DNT", True),
            geo_privacy_mode=_env_bool("GEO_PRIVACY_MODE", False),
            auth_required=_env_bool("AUTH_REQUIRED", False),
            default_owner_id=os.environ.get("DEFAULT_OWNER_ID", "default"),
            collect_endpoint=os.environ.get("COLLECT_ENDPOINT") or None,
        )

    def raw_ttl_seconds(self, site_settings: Optional[SiteSettings] = None) -> int:
        days = site_settings.retention_days if site_settings else self.raw_event_ttl_days
        return days * DAY_SECONDS
