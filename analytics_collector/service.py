"""
Collector service: ingestion orchestration and dashboard queries.

One CollectorService is created per Lambda container. It owns the store,
the session/goal/site caches and the conversion tracker, so cached state is
explicit and can be reset by dropping the instance.

Ingestion order for a beacon:
    DNT/GPC -> URL check -> bot/site/exclusion filters -> visitor id ->
    session (read-modify) -> PageView/Event write -> Session write ->
    realtime + rollups (best effort) -> goal conversions (best effort)
"""

import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from . import breakdowns
from .aggregation import Aggregator, iter_buckets
from .cache import ConversionTracker, TTLCache
from .config import Settings, SiteSettings
from .errors import BadRequestError, NotFoundError
from .geo import GeoInfo, GeoResolver
from .goals import ConversionMetadata, GoalContext, GoalEngine, calculate_conversion_rate
from .identity import derive_session_id, derive_visitor_id, get_daily_salt
from .models import Beacon, Device, Event, PageView, Period, Session, Site, Utm, goal_adapter, iso_timestamp
from .sessions import SessionManager
from .storage import AnalyticsStore
from .user_agent import is_bot, parse_referrer_source, parse_user_agent

logger = logging.getLogger(__name__)

UTM_FIELDS = ("source", "medium", "campaign", "term", "content")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestInfo(NamedTuple):
    ip: Optional[str]
    user_agent: Optional[str]
    headers: Mapping[str, str]


class IngestResult(NamedTuple):
    accepted: bool
    reason: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    conversions: int = 0


def tracking_disabled(headers: Mapping[str, str]) -> bool:
    """True when the request carries an affirmative DNT or Sec-GPC header."""
    for name, value in headers.items():
        if name.lower() in ("dnt", "sec-gpc") and str(value).strip() == "1":
            return True
    return False


def parse_page_url(url: str):
    try:
        parsed = urlparse(url)
        parsed.port
    except ValueError:
        raise BadRequestError("Invalid URL")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise BadRequestError("Invalid URL")
    return parsed


def extract_utm(query: str) -> Optional[Utm]:
    params = parse_qs(query)
    values = {field: params[f"utm_{field}"][0] for field in UTM_FIELDS if params.get(f"utm_{field}")}
    return Utm(**values) if values else None


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def event_value(raw: Any) -> Optional[float]:
    """Numeric event value, or None for anything that is not a finite number."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    try:
        value = float(raw)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


class CollectorService:
    def __init__(
        self,
        settings: Settings,
        table,
        clock: Callable[[], datetime] = utcnow,
        geo: Optional[GeoResolver] = None,
    ):
        self.settings = settings
        self.clock = clock
        epoch = lambda: self.clock().timestamp()  # noqa: E731

        self.store = AnalyticsStore(table, now=epoch)
        self.session_cache: TTLCache[Session] = TTLCache(settings.session_timeout_seconds, clock=epoch)
        self.goal_cache: TTLCache[list] = TTLCache(settings.goal_cache_ttl_seconds, clock=epoch)
        self.site_cache: TTLCache[Tuple[Optional[Site]]] = TTLCache(settings.site_cache_ttl_seconds, clock=epoch)
        self.tracker = ConversionTracker()

        self.sessions = SessionManager(self.store, self.session_cache, settings.session_timeout_seconds)
        self.goals = GoalEngine(self.store, self.goal_cache, self.tracker, clock)
        self.aggregator = Aggregator(self.store, settings, clock)
        self.geo = geo or GeoResolver(privacy_mode=settings.geo_privacy_mode)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _cached_site(self, site_id: str) -> Optional[Site]:
        # Wrapped in a tuple so a missing site is cached too
        entry = self.site_cache.get(site_id)
        if entry is None:
            entry = (self.store.get_site(site_id),)
            self.site_cache.set(site_id, entry)
        return entry[0]

    def ingest(self, beacon: Beacon, request: RequestInfo) -> IngestResult:
        """Process one beacon. Raises BadRequestError for an unusable URL and StorageError on primary writes."""
        if self.settings.honor_dnt and tracking_disabled(request.headers):
            return IngestResult(False, "dnt")

        url = parse_page_url(beacon.u)
        path = url.path or "/"

        if is_bot(request.user_agent):
            return IngestResult(False, "bot")

        site = self._cached_site(beacon.s)
        site_settings = site.settings if site else SiteSettings()
        if site and not site.is_active:
            return IngestResult(False, "inactive")
        if site_settings.is_path_excluded(path):
            return IngestResult(False, "excluded_path")
        if site_settings.is_ip_excluded(request.ip):
            return IngestResult(False, "excluded_ip")

        now = self.clock()
        salt = get_daily_salt(now, secret=self.settings.salt_secret)
        visitor_id = derive_visitor_id(request.ip, request.user_agent, beacon.s, salt)
        session_id = beacon.sid or derive_session_id(visitor_id)
        ttl_seconds = self.settings.raw_ttl_seconds(site.settings if site else None)

        device = None
        if site_settings.track_devices:
            parsed_ua = parse_user_agent(request.user_agent)
            screen = f"{beacon.sw}x{beacon.sh}" if beacon.sw and beacon.sh else None
            device = Device(type=parsed_ua.device_type, browser=parsed_ua.browser, os=parsed_ua.os, screen=screen)

        referrer = referrer_source = None
        if site_settings.track_referrers:
            referrer = beacon.r or None
            referrer_source = parse_referrer_source(referrer, url.hostname)

        utm = extract_utm(url.query) if site_settings.track_utm else None

        geo: Optional[GeoInfo] = None
        if site_settings.collect_geolocation:
            geo = self.geo.resolve(request.headers)
        country = geo.country_code if geo else None

        attrs = dict(referrer=referrer, referrer_source=referrer_source, utm=utm, device=device, country=country)

        if beacon.e == "pageview":
            session, is_new = self.sessions.apply_pageview(beacon.s, session_id, visitor_id, path, now, **attrs)
            pageview = PageView(
                id=str(uuid.uuid4()),
                site_id=beacon.s,
                visitor_id=visitor_id,
                session_id=session_id,
                path=path,
                hostname=url.hostname,
                title=beacon.t,
                referrer=referrer,
                referrer_source=referrer_source,
                utm=utm,
                device=device,
                country=country,
                region=(geo.region or geo.region_code) if geo else None,
                city=geo.city if geo else None,
                is_unique=is_new,
                is_bounce=is_new,
                timestamp=now,
            )
            self.store.put_pageview(pageview, ttl_seconds)
            self.sessions.save(session, ttl_seconds)
            self.aggregator.record_pageview(beacon.s, visitor_id, session_id, now)
            context = GoalContext(path=path, session_duration_minutes=session.duration / 60000)
        else:
            props = beacon.p or {}
            value = event_value(props.get("value"))
            session, _ = self.sessions.apply_event(beacon.s, session_id, visitor_id, path, now, **attrs)
            event = Event(
                id=str(uuid.uuid4()),
                site_id=beacon.s,
                visitor_id=visitor_id,
                session_id=session_id,
                name=str(props.get("name") or "unnamed"),
                value=value,
                path=path,
                timestamp=now,
            )
            self.store.put_event(event, ttl_seconds)
            self.sessions.save(session, ttl_seconds)
            context = GoalContext(
                path=path, event_name=event.name, session_duration_minutes=session.duration / 60000
            )

        session_utm = session.utm or Utm()
        metadata = ConversionMetadata(
            referrer_source=session.referrer_source,
            utm_source=session_utm.source,
            utm_medium=session_utm.medium,
            utm_campaign=session_utm.campaign,
        )
        conversions = self.goals.check_and_record_conversions(
            beacon.s, visitor_id, session_id, context, metadata, ttl_seconds
        )
        return IngestResult(True, None, visitor_id, session_id, len(conversions))

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, body: Dict[str, Any], owner_id: str) -> Site:
        name = str(body.get("name") or "").strip()
        if not name:
            raise BadRequestError("Missing required field(s): name")
        site_id = slugify(str(body.get("id") or name))
        if not site_id:
            raise BadRequestError(f"Cannot derive a site id from {name!r}")

        now = self.clock()
        try:
            site = Site(
                id=site_id,
                name=name,
                domains=body.get("domains") or [],
                timezone=body.get("timezone") or "UTC",
                is_active=True,
                owner_id=owner_id,
                settings=body.get("settings") or {},
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise BadRequestError(describe_validation_error(e))

        self.store.create_site(site)
        self.site_cache.delete(site_id)
        logger.info(f"Created site {site_id} for owner {owner_id}")
        return site

    def list_sites(self, owner_id: str) -> List[Site]:
        return self.store.list_sites(owner_id)

    def get_site(self, site_id: str) -> Site:
        site = self.store.get_site(site_id)
        if site is None:
            raise NotFoundError(f"Site not found: {site_id}")
        return site

    def update_site(self, site_id: str, body: Dict[str, Any], owner_id: str) -> Site:
        """Only `settings` and `isActive` can change after creation."""
        site = self.get_site(site_id)
        if site.owner_id != owner_id:
            raise NotFoundError(f"Site not found: {site_id}")

        unknown = sorted(set(body) - {"settings", "isActive"})
        if unknown:
            raise BadRequestError(f"Fields cannot be updated: {', '.join(unknown)}")

        update: Dict[str, Any] = {"updated_at": self.clock()}
        try:
            if "settings" in body:
                if not isinstance(body["settings"], dict):
                    raise BadRequestError("settings must be an object")
                merged = {**site.settings.model_dump(by_alias=True), **body["settings"]}
                update["settings"] = SiteSettings.model_validate(merged)
            if "isActive" in body:
                if not isinstance(body["isActive"], bool):
                    raise BadRequestError("isActive must be a boolean")
                update["is_active"] = body["isActive"]
        except ValidationError as e:
            raise BadRequestError(describe_validation_error(e))

        site = site.model_copy(update=update)
        self.store.save_site(site)
        self.site_cache.delete(site_id)
        return site

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def create_goal(self, site_id: str, body: Dict[str, Any]):
        data = {**body, "id": str(uuid.uuid4()), "siteId": site_id}
        try:
            goal = goal_adapter.validate_python(data)
        except ValidationError as e:
            raise BadRequestError(describe_validation_error(e))

        self.store.put_goal(goal)
        self.goals.invalidate(site_id)
        logger.info(f"Created {goal.type} goal {goal.id} for {site_id}")
        return goal

    def list_goals(self, site_id: str) -> list:
        return self.store.list_goals(site_id)

    def goal_stats(self, site_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        start_iso, end_iso = iso_timestamp(start), iso_timestamp(end)
        visitors = {pv.visitor_id for pv in self.store.list_pageviews(site_id, start_iso, end_iso)}

        results = []
        for goal in self.store.list_goals(site_id):
            conversions = self.store.list_conversions(site_id, goal.id, start_iso, end_iso)
            results.append(
                {
                    "goalId": goal.id,
                    "name": goal.name,
                    "type": goal.type,
                    "isActive": goal.is_active,
                    "conversions": len(conversions),
                    "value": sum(c.value for c in conversions),
                    "conversionRate": round(calculate_conversion_rate(len(conversions), len(visitors)), 2),
                }
            )
        return results

    # ------------------------------------------------------------------
    # Dashboard reads
    # ------------------------------------------------------------------

    def list_sessions(self, site_id: str, date: str) -> List[Dict[str, Any]]:
        now = self.clock()
        return [
            {**session.to_json(), "isActive": self.sessions.is_active(session, now)}
            for session in self.store.list_sessions_by_date(site_id, date)
        ]

    def list_events(self, site_id: str, name: str, start: datetime, end: datetime) -> List[Event]:
        return self.store.list_events_by_name(site_id, name, iso_timestamp(start), iso_timestamp(end))

    def visitor_journey(self, site_id: str, visitor_id: str) -> List[PageView]:
        return self.store.list_visitor_pageviews(site_id, visitor_id)

    def stats(self, site_id: str, start: datetime, end: datetime):
        return self.aggregator.get_stats(site_id, start, end)

    def breakdown(self, site_id: str, dimension: str, start: datetime, end: datetime, limit: int) -> List[Dict]:
        pageviews = self.store.list_pageviews(site_id, iso_timestamp(start), iso_timestamp(end))
        return breakdowns.top_values(pageviews, dimension, limit)

    def entry_exit_pages(self, site_id: str, start: datetime, end: datetime, limit: int) -> Dict[str, List[Dict]]:
        """Entry and exit pages of sessions that started inside the range."""
        sessions = [
            session
            for day in iter_buckets(start, end, Period.DAY)
            for session in self.store.list_sessions_by_date(site_id, day)
            if start <= session.started_at <= end
        ]
        return breakdowns.entry_exit_pages(sessions, limit)

    def realtime(self, site_id: str, minutes: int) -> dict:
        return self.aggregator.get_realtime(site_id, minutes)


def describe_validation_error(error: ValidationError) -> str:
    """Flatten pydantic errors into "field: message; ..."."""
    parts = []
    for err in error.errors():
        location = ".".join(str(loc) for loc in err["loc"]) or "body"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)
