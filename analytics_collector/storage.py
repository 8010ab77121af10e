"""
DynamoDB storage adapter for the analytics table.

Writes are plain puts keyed by record id, so retrying a write overwrites
instead of duplicating. Counters use atomic ADD updates; first-occurrence checks use conditional
puts of small marker items. Nothing here spans
more than one item: a page view can be stored while its session write fails.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ValidationError

from . import keys
from .errors import ConflictError, StorageError
from .models import (
    Aggregate,
    Conversion,
    Event,
    PageView,
    Period,
    RealtimeCounter,
    Session,
    Site,
    goal_adapter,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class AnalyticsStore:
    """Reads and writes domain records against one DynamoDB table resource."""

    def __init__(self, table, now: Callable[[], float] = time.time):
        self.table = table
        self._now = now

    # ------------------------------------------------------------------
    # Low level helpers
    # ------------------------------------------------------------------

    def _put(self, item: Dict[str, Any], **kwargs) -> None:
        try:
            self.table.put_item(Item=item, **kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise ConflictError(f"Item already exists: {item['pk']} / {item['sk']}") from e
            logger.error(f"Put failed for {item['pk']} / {item['sk']}: {e}")
            raise StorageError("put_item", {"pk": item["pk"], "sk": item["sk"]}, e) from e
        except BotoCoreError as e:
            logger.error(f"Put failed for {item['pk']} / {item['sk']}: {e}")
            raise StorageError("put_item", {"pk": item["pk"], "sk": item["sk"]}, e) from e

    def _get(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key={"pk": pk, "sk": sk})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Get failed for {pk} / {sk}: {e}")
            raise StorageError("get_item", {"pk": pk, "sk": sk}, e) from e
        item = response.get("Item")
        if item and self._is_expired(item):
            return None
        return item

    def _query(self, **kwargs) -> Iterator[Dict[str, Any]]:
        """Run a query and follow LastEvaluatedKey until the result set is exhausted."""
        try:
            response = self.table.query(**kwargs)
            for item in response.get("Items", []):
                if not self._is_expired(item):
                    yield item

            while "LastEvaluatedKey" in response:
                response = self.table.query(
                    ExclusiveStartKey=response["LastEvaluatedKey"],
                    **kwargs,
                )
                for item in response.get("Items", []):
                    if not self._is_expired(item):
                        yield item
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Query failed ({kwargs.get('IndexName', 'table')}): {e}")
            raise StorageError("query", {"index": kwargs.get("IndexName", "table")}, e) from e

    def _claim(self, pk: str, sk: str, ttl_seconds: Optional[int]) -> bool:
        """
        Write a marker item unless a live one exists.

        Returns True for the first claim and False for a repeat. A marker past
        its TTL counts as absent even before DynamoDB has deleted it.
        """
        item: Dict[str, Any] = {"pk": pk, "sk": sk}
        expires_at = self._expires_at(ttl_seconds)
        if expires_at is not None:
            item["ttl"] = expires_at
        try:
            self._put(item, ConditionExpression=Attr("pk").not_exists() | Attr("ttl").lte(int(self._now())))
        except ConflictError:
            return False
        return True

    def _release(self, pk: str, sk: str) -> None:
        try:
            self.table.delete_item(Key={"pk": pk, "sk": sk})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Delete failed for {pk} / {sk}: {e}")
            raise StorageError("delete_item", {"pk": pk, "sk": sk}, e) from e

    def _is_expired(self, item: Dict[str, Any]) -> bool:
        # DynamoDB deletes expired items lazily; never serve them.
        ttl = item.get("ttl")
        return ttl is not None and int(ttl) <= self._now()

    def _expires_at(self, ttl_seconds: Optional[int]) -> Optional[int]:
        if ttl_seconds is None:
            return None
        return int(self._now()) + ttl_seconds

    def _load(self, items, model: Type[M]) -> List[M]:
        records = []
        skipped = 0
        for item in items:
            try:
                records.append(keys.from_item(item, model))
            except ValidationError as e:
                skipped += 1
                logger.warning(f"Skipping malformed {model.__name__} {item.get('sk')}: {e.error_count()} errors")
        if skipped:
            logger.warning(f"Skipped {skipped} malformed {model.__name__} records")
        return records

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, site: Site) -> None:
        item = keys.to_item(site, keys.site_keys(site))
        self._put(item, ConditionExpression=Attr("pk").not_exists())

    def save_site(self, site: Site) -> None:
        self._put(keys.to_item(site, keys.site_keys(site)))

    def get_site(self, site_id: str) -> Optional[Site]:
        item = self._get(keys.site_pk(site_id), keys.site_pk(site_id))
        if not item:
            return None
        sites = self._load([item], Site)
        return sites[0] if sites else None

    def list_sites(self, owner_id: str) -> List[Site]:
        items = self._query(
            IndexName="GSI1",
            KeyConditionExpression=Key("gsi1pk").eq(keys.owner_pk(owner_id)) & Key("gsi1sk").begins_with("SITE#"),
        )
        return self._load(items, Site)

    # ------------------------------------------------------------------
    # Raw records
    # ------------------------------------------------------------------

    def put_pageview(self, pageview: PageView, ttl_seconds: Optional[int] = None) -> None:
        self._put(keys.to_item(pageview, keys.pageview_keys(pageview), self._expires_at(ttl_seconds)))

    def list_pageviews(self, site_id: str, start: str, end: str) -> List[PageView]:
        """Page views with start <= timestamp <= end (ISO strings)."""
        items = self._query(
            KeyConditionExpression=Key("pk").eq(keys.site_pk(site_id))
            & Key("sk").between(f"PAGEVIEW#{start}", f"PAGEVIEW#{end}~"),
        )
        return self._load(items, PageView)

    def list_visitor_pageviews(self, site_id: str, visitor_id: str) -> List[PageView]:
        items = self._query(
            IndexName="GSI2",
            KeyConditionExpression=Key("gsi2pk").eq(keys.visitor_pk(site_id, visitor_id)),
            ScanIndexForward=True,
        )
        return self._load(items, PageView)

    def put_session(self, session: Session, ttl_seconds: Optional[int] = None) -> None:
        self._put(keys.to_item(session, keys.session_keys(session), self._expires_at(ttl_seconds)))

    def get_session(self, site_id: str, session_id: str) -> Optional[Session]:
        item = self._get(keys.site_pk(site_id), keys.session_sk(session_id))
        if not item:
            return None
        sessions = self._load([item], Session)
        return sessions[0] if sessions else None

    def list_sessions_by_date(self, site_id: str, date: str) -> List[Session]:
        items = self._query(
            IndexName="GSI1",
            KeyConditionExpression=Key("gsi1pk").eq(keys.date_pk(site_id, date))
            & Key("gsi1sk").begins_with("SESSION#"),
        )
        return self._load(items, Session)

    def put_event(self, event: Event, ttl_seconds: Optional[int] = None) -> None:
        self._put(keys.to_item(event, keys.event_keys(event), self._expires_at(ttl_seconds)))

    def list_events_by_name(self, site_id: str, name: str, start: str, end: str) -> List[Event]:
        items = self._query(
            IndexName="GSI1",
            KeyConditionExpression=Key("gsi1pk").eq(keys.event_name_pk(site_id, name))
            & Key("gsi1sk").between(start, f"{end}~"),
        )
        return self._load(items, Event)

    # ------------------------------------------------------------------
    # Goals and conversions
    # ------------------------------------------------------------------

    def put_goal(self, goal) -> None:
        self._put(keys.to_item(goal, keys.goal_keys(goal)))

    def list_goals(self, site_id: str) -> list:
        items = self._query(
            KeyConditionExpression=Key("pk").eq(keys.site_pk(site_id)) & Key("sk").begins_with("GOAL#"),
        )
        goals = []
        for item in items:
            try:
                goals.append(goal_adapter.validate_python(keys.strip_keys(item)))
            except ValidationError as e:
                logger.warning(f"Skipping malformed goal {item.get('sk')}: {e.error_count()} errors")
        return goals

    def claim_conversion(
        self, site_id: str, session_id: str, goal_id: str, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Reserve the (session, goal) conversion. False when the session already converted."""
        return self._claim(keys.site_pk(site_id), keys.converted_sk(session_id, goal_id), ttl_seconds)

    def release_conversion(self, site_id: str, session_id: str, goal_id: str) -> None:
        self._release(keys.site_pk(site_id), keys.converted_sk(session_id, goal_id))

    def put_conversion(self, conversion: Conversion, ttl_seconds: Optional[int] = None) -> None:
        self._put(keys.to_item(conversion, keys.conversion_keys(conversion), self._expires_at(ttl_seconds)))

    def list_conversions(
        self, site_id: str, goal_id: str, start: Optional[str] = None, end: Optional[str] = None
    ) -> List[Conversion]:
        condition = Key("gsi1pk").eq(keys.goal_pk(site_id, goal_id))
        if start and end:
            condition = condition & Key("gsi1sk").between(start, f"{end}~")
        items = self._query(IndexName="GSI1", KeyConditionExpression=condition)
        return self._load(items, Conversion)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def increment_realtime(self, site_id: str, minute: str, ttl_seconds: int) -> None:
        key = {"pk": keys.site_pk(site_id), "sk": keys.realtime_sk(minute)}
        try:
            self.table.update_item(
                Key=key,
                UpdateExpression="SET #ttl = :ttl, #site = :site, #minute = :minute ADD #views :one",
                ExpressionAttributeNames={
                    "#ttl": "ttl",
                    "#site": "siteId",
                    "#minute": "minute",
                    "#views": "pageViews",
                },
                ExpressionAttributeValues={
                    ":ttl": self._expires_at(ttl_seconds),
                    ":site": site_id,
                    ":minute": minute,
                    ":one": 1,
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError("update_item", key, e) from e

    def list_realtime(self, site_id: str, start_minute: str, end_minute: str) -> List[RealtimeCounter]:
        items = self._query(
            KeyConditionExpression=Key("pk").eq(keys.site_pk(site_id))
            & Key("sk").between(keys.realtime_sk(start_minute), keys.realtime_sk(end_minute)),
        )
        return self._load(items, RealtimeCounter)

    def increment_rollup(
        self,
        site_id: str,
        period: Period,
        period_start: str,
        visitor_id: str,
        session_id: str,
        ttl_seconds: Optional[int],
        marker_ttl_seconds: Optional[int] = None,
    ) -> None:
        """
        Bump a period aggregate.

        All counters are numbers, so the item stays the same size however busy
        the bucket gets. Uniques are counted once per bucket by claiming a
        `UNIQUE#` marker for the visitor and for the session first; a failed
        counter update releases the markers it claimed.
        """
        pk = keys.site_pk(site_id)
        key = {"pk": pk, "sk": keys.stats_sk(period, period_start)}

        visitor_sk = keys.unique_sk(period, period_start, "VISITOR", visitor_id)
        session_sk = keys.unique_sk(period, period_start, "SESSION", session_id)
        new_visitor = self._claim(pk, visitor_sk, marker_ttl_seconds)
        new_session = self._claim(pk, session_sk, marker_ttl_seconds)
        claimed = [sk for sk, new in ((visitor_sk, new_visitor), (session_sk, new_session)) if new]

        names = {
            "#period": "period",
            "#start": "periodStart",
            "#views": "pageViews",
            "#visitors": "uniqueVisitors",
            "#sessions": "sessions",
        }
        values: Dict[str, Any] = {
            ":period": period.value,
            ":start": period_start,
            ":one": 1,
            ":visitor": int(new_visitor),
            ":session": int(new_session),
        }
        set_expr = "SET #period = :period, #start = :start"
        expires_at = self._expires_at(ttl_seconds)
        if expires_at is not None:
            names["#ttl"] = "ttl"
            values[":ttl"] = expires_at
            set_expr += ", #ttl = :ttl"

        try:
            self.table.update_item(
                Key=key,
                UpdateExpression=f"{set_expr} ADD #views :one, #visitors :visitor, #sessions :session",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except (ClientError, BotoCoreError) as e:
            for marker_sk in claimed:
                try:
                    self._release(pk, marker_sk)
                except StorageError:
                    logger.warning(f"Could not release {marker_sk}; uniques for {key['sk']} may undercount")
            raise StorageError("update_item", key, e) from e

    def list_rollups(self, site_id: str, period: Period, start: str, end: str) -> List[Aggregate]:
        items = self._query(
            KeyConditionExpression=Key("pk").eq(keys.site_pk(site_id))
            & Key("sk").between(keys.stats_sk(period, start), keys.stats_sk(period, end)),
        )
        aggregates = []
        for item in items:
            try:
                aggregates.append(
                    Aggregate(
                        period=item["period"],
                        period_start=item["periodStart"],
                        page_views=int(item.get("pageViews", 0)),
                        unique_visitors=int(item.get("uniqueVisitors", 0)),
                        sessions=int(item.get("sessions", 0)),
                    )
                )
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed aggregate {item.get('sk')}: {e}")
        return aggregates
