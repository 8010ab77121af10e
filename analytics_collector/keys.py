"""
Key patterns for the single analytics table.

Every record lives under its site's partition (`SITE#{siteId}`) so that any
per-site read is a single-partition range query. Sort keys either start with
a fixed-width ISO timestamp (time-ordered records) or carry a stable id
(point lookups). Secondary indexes are populated only for the access
patterns that need them:

    GSI1  by owner (sites), by day (page views, sessions), by event name,
          by goal (conversions)
    GSI2  by visitor (page view journey)

Marker items (`CONVERTED#...`, `UNIQUE#...`) carry no index keys; they exist
only so a conditional put can tell a first occurrence from a repeat.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel

from .models import (
    Conversion,
    Event,
    PageView,
    Period,
    Session,
    Site,
    iso_timestamp,
)

KEY_ATTRIBUTES = ("pk", "sk", "gsi1pk", "gsi1sk", "gsi2pk", "gsi2sk", "ttl")

M = TypeVar("M", bound=BaseModel)


def site_pk(site_id: str) -> str:
    return f"SITE#{site_id}"


def owner_pk(owner_id: str) -> str:
    return f"OWNER#{owner_id}"


def date_pk(site_id: str, date: str) -> str:
    return f"SITE#{site_id}#DATE#{date}"


def visitor_pk(site_id: str, visitor_id: str) -> str:
    return f"SITE#{site_id}#VISITOR#{visitor_id}"


def event_name_pk(site_id: str, name: str) -> str:
    return f"SITE#{site_id}#EVENT#{name}"


def goal_pk(site_id: str, goal_id: str) -> str:
    return f"SITE#{site_id}#GOAL#{goal_id}"


def realtime_sk(minute: str) -> str:
    return f"REALTIME#{minute}"


def stats_sk(period: Period, period_start: str) -> str:
    return f"STATS#{period.value.upper()}#{period_start}"


def session_sk(session_id: str) -> str:
    return f"SESSION#{session_id}"


def goal_sk(goal_id: str) -> str:
    return f"GOAL#{goal_id}"


def converted_sk(session_id: str, goal_id: str) -> str:
    return f"CONVERTED#{session_id}#{goal_id}"


def unique_sk(period: Period, period_start: str, kind: str, member_id: str) -> str:
    return f"UNIQUE#{period.value.upper()}#{period_start}#{kind}#{member_id}"


def site_keys(site: Site) -> Dict[str, str]:
    return {
        "pk": site_pk(site.id),
        "sk": site_pk(site.id),
        "gsi1pk": owner_pk(site.owner_id),
        "gsi1sk": site_pk(site.id),
    }


def pageview_keys(pageview: PageView) -> Dict[str, str]:
    ts = iso_timestamp(pageview.timestamp)
    return {
        "pk": site_pk(pageview.site_id),
        "sk": f"PAGEVIEW#{ts}#{pageview.id}",
        "gsi1pk": date_pk(pageview.site_id, ts[:10]),
        "gsi1sk": f"PATH#{pageview.path}#{pageview.id}",
        "gsi2pk": visitor_pk(pageview.site_id, pageview.visitor_id),
        "gsi2sk": ts,
    }


def session_keys(session: Session) -> Dict[str, str]:
    return {
        "pk": site_pk(session.site_id),
        "sk": session_sk(session.id),
        "gsi1pk": date_pk(session.site_id, iso_timestamp(session.started_at)[:10]),
        "gsi1sk": session_sk(session.id),
    }


def event_keys(event: Event) -> Dict[str, str]:
    ts = iso_timestamp(event.timestamp)
    return {
        "pk": site_pk(event.site_id),
        "sk": f"EVENT#{ts}#{event.id}",
        "gsi1pk": event_name_pk(event.site_id, event.name),
        "gsi1sk": ts,
    }


def goal_keys(goal) -> Dict[str, str]:
    return {
        "pk": site_pk(goal.site_id),
        "sk": goal_sk(goal.id),
    }


def conversion_keys(conversion: Conversion) -> Dict[str, str]:
    ts = iso_timestamp(conversion.timestamp)
    return {
        "pk": site_pk(conversion.site_id),
        "sk": f"CONVERSION#{ts}#{conversion.id}",
        "gsi1pk": goal_pk(conversion.site_id, conversion.goal_id),
        "gsi1sk": ts,
    }


def to_dynamo(value: Any) -> Any:
    """boto3 rejects floats; round-trip through JSON to turn them into Decimal."""
    return json.loads(json.dumps(value), parse_float=Decimal)


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value % 1 == 0 else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    if isinstance(value, set):
        return {from_dynamo(v) for v in value}
    return value


def to_item(record: BaseModel, keys: Dict[str, str], ttl: int | None = None) -> Dict[str, Any]:
    """Build a table item: record attributes plus its key tuple and optional TTL."""
    item = to_dynamo(record.model_dump(mode="json", by_alias=True, exclude_none=True))
    item.update(keys)
    if ttl is not None:
        item["ttl"] = ttl
    return item


def strip_keys(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: from_dynamo(v) for k, v in item.items() if k not in KEY_ATTRIBUTES}


def from_item(item: Dict[str, Any], model: Type[M]) -> M:
    """Rebuild a record from a table item. Raises pydantic.ValidationError on malformed data."""
    return model.model_validate(strip_keys(item))
