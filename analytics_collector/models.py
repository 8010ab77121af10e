"""
Domain records stored in the analytics table.

Attributes are persisted and returned in camelCase (`siteId`, `startedAt`)
to match the dashboard contract; Python code uses the snake_case names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter
from pydantic.alias_generators import to_camel

from .config import SiteSettings


def iso_timestamp(dt: datetime) -> str:
    """Fixed-width UTC timestamp, e.g. 2024-01-15T12:00:00.000Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


Timestamp = Annotated[datetime, PlainSerializer(iso_timestamp, return_type=str, when_used="json")]


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Site(Record):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    domains: List[str] = Field(default_factory=list)
    timezone: str = "UTC"
    is_active: bool = True
    owner_id: str
    settings: SiteSettings = Field(default_factory=SiteSettings)
    created_at: Timestamp
    updated_at: Timestamp


class Utm(Record):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class Device(Record):
    type: str = "desktop"
    browser: str = "Unknown"
    os: str = "Unknown"
    screen: Optional[str] = None


class PageView(Record):
    id: str
    site_id: str
    visitor_id: str
    session_id: str
    path: str
    hostname: str
    title: Optional[str] = None
    referrer: Optional[str] = None
    referrer_source: Optional[str] = None
    utm: Optional[Utm] = None
    device: Optional[Device] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    is_unique: bool
    is_bounce: bool
    timestamp: Timestamp


class Session(Record):
    id: str
    site_id: str
    visitor_id: str
    entry_path: str
    exit_path: str
    referrer: Optional[str] = None
    referrer_source: Optional[str] = None
    utm: Optional[Utm] = None
    device: Optional[Device] = None
    country: Optional[str] = None
    page_view_count: int = 0
    event_count: int = 0
    is_bounce: bool = True
    duration: int = 0
    started_at: Timestamp
    ended_at: Timestamp


class Event(Record):
    id: str
    site_id: str
    visitor_id: str
    session_id: str
    name: str
    value: Optional[float] = None
    path: str
    timestamp: Timestamp


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class BaseGoal(Record):
    id: str
    site_id: str
    name: str = Field(min_length=1)
    value: float = 0
    is_active: bool = True


class PageviewGoal(BaseGoal):
    type: Literal["pageview"] = "pageview"
    pattern: str = Field(min_length=1)
    match_type: MatchType = MatchType.EXACT


class EventGoal(BaseGoal):
    type: Literal["event"] = "event"
    pattern: str = Field(min_length=1)
    match_type: MatchType = MatchType.EXACT


class DurationGoal(BaseGoal):
    type: Literal["duration"] = "duration"
    duration_minutes: float = Field(default=0, ge=0)


Goal = Annotated[Union[PageviewGoal, EventGoal, DurationGoal], Field(discriminator="type")]
goal_adapter: TypeAdapter = TypeAdapter(Goal)


class Conversion(Record):
    id: str
    site_id: str
    goal_id: str
    visitor_id: str
    session_id: str
    value: float = 0
    path: str
    referrer_source: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    timestamp: Timestamp


class Period(str, Enum):
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class Aggregate(Record):
    period: Period
    period_start: str
    page_views: int = 0
    unique_visitors: int = 0
    sessions: int = 0


class RealtimeCounter(Record):
    site_id: str
    minute: str
    page_views: int = 0


class Beacon(BaseModel):
    """Body of POST /collect as sent by the tracking script."""

    model_config = ConfigDict(extra="ignore")

    s: str = Field(min_length=1)
    sid: Optional[str] = None
    e: Literal["pageview", "event"]
    u: str = Field(min_length=1)
    r: Optional[str] = None
    t: Optional[str] = None
    sw: Optional[int] = None
    sh: Optional[int] = None
    p: Optional[Dict[str, Any]] = None
