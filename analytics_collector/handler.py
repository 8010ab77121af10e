"""
Analytics Collector Lambda

Ingests tracking beacons and serves the dashboard read API.

Routes:
    POST  /collect                              - Pageview/event beacon (204)
    GET   /sites                                - Sites of the current owner
    POST  /sites                                - Create a site
    GET   /sites/{siteId}                       - Single site
    PATCH /sites/{siteId}                       - Update settings / isActive
    GET   /sites/{siteId}/stats                 - Period aggregates (zero-filled)
    GET   /sites/{siteId}/realtime              - Realtime visitor estimate
    GET   /sites/{siteId}/script                - Tracking script (JavaScript)
    GET   /sites/{siteId}/pages                 - Top pages (also referrers, devices,
                                                  browsers, countries, campaigns)
    GET   /sites/{siteId}/entry-exit            - Entry and exit pages of sessions
    GET   /sites/{siteId}/goals                 - Goals
    POST  /sites/{siteId}/goals                 - Create a goal
    GET   /sites/{siteId}/goals/stats           - Conversions per goal
    GET   /sites/{siteId}/sessions              - Sessions started on a day
    GET   /sites/{siteId}/events                - Custom events by name
    GET   /sites/{siteId}/visitors/{visitorId}  - Visitor journey
"""

import base64
import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import boto3
from pydantic import ValidationError

from . import auth, breakdowns
from .config import Settings
from .errors import BadRequestError, CollectorError
from .models import Beacon, iso_timestamp
from .service import CollectorService, RequestInfo, describe_validation_error
from .tracking_script import render_tracking_script


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal types from DynamoDB."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            if obj % 1 == 0:
                return int(obj)
            return float(obj)
        return super().default(obj)


# Configure logging
log_level = os.environ.get("LOG_LEVEL", "INFO")
logging.basicConfig(level=log_level)
logger = logging.getLogger(__name__)

HANDLER_NAME = "analytics-collector"

DEFAULT_RANGE_DAYS = 7
DEFAULT_REALTIME_MINUTES = 5
REQUIRED_BEACON_FIELDS = ("s", "e", "u")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
    "Access-Control-Allow-Methods": "OPTIONS,GET,POST,PATCH",
}

# Cached AWS clients and service (container reuse)
_dynamodb = None
_service = None


def _get_dynamodb():
    global _dynamodb
    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def _get_service() -> CollectorService:
    global _service
    if _service is None:
        settings = Settings.from_env()
        table = _get_dynamodb().Table(settings.table_name)
        _service = CollectorService(settings, table)
    return _service


def _response(status_code: int, body: Any) -> Dict:
    """Return standardized API response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS},
        "body": json.dumps(body, cls=DecimalEncoder),
    }


def _error(status_code: int, message: str) -> Dict:
    return _response(status_code, {"error": message})


def _no_content() -> Dict:
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _javascript(script: str) -> Dict:
    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": "application/javascript; charset=utf-8",
            "Cache-Control": "public, max-age=3600",
            **CORS_HEADERS,
        },
        "body": script,
    }


def _headers(event: Dict) -> Dict[str, str]:
    return {k.lower(): v for k, v in (event.get("headers") or {}).items()}


def _path_param(event: Dict, name: str) -> str:
    value = (event.get("pathParameters") or {}).get(name)
    if not value:
        raise BadRequestError(f"Missing path parameter: {name}")
    return value


def _query_params(event: Dict) -> Dict[str, str]:
    return event.get("queryStringParameters") or {}


def _parse_body(event: Dict) -> Dict:
    """Decode the JSON request body (base64 when API Gateway says so)."""
    raw = event.get("body") or ""
    if event.get("isBase64Encoded") and raw:
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            raise BadRequestError("Invalid request body encoding")
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise BadRequestError("Invalid JSON body")
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


def _client_ip(event: Dict, headers: Dict[str, str]) -> Optional[str]:
    source_ip = event.get("requestContext", {}).get("http", {}).get("sourceIp")
    if source_ip:
        return source_ip
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return None


def _parse_timestamp(value: str, end_of_day: bool) -> datetime:
    try:
        if len(value) == 10:
            day = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
            return day + timedelta(days=1, milliseconds=-1) if end_of_day else day
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise BadRequestError(f"Invalid date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_date_range(event: Dict, now: datetime) -> Tuple[datetime, datetime]:
    """
    Parse start/end parameters from query string.

    Defaults to last 7 days if not provided. A date-only end covers that
    whole day.
    """
    params = _query_params(event)
    end = _parse_timestamp(params["end"], end_of_day=True) if params.get("end") else now
    if params.get("start"):
        start = _parse_timestamp(params["start"], end_of_day=False)
    else:
        start = end - timedelta(days=DEFAULT_RANGE_DAYS)

    if start > end:
        raise BadRequestError("start must not be after end")
    return start, end


def _validate_payload(payload: Dict) -> Optional[str]:
    """Validate a collect beacon. Returns error message or None if valid."""
    missing = [field for field in REQUIRED_BEACON_FIELDS if payload.get(field) in (None, "")]
    if missing:
        return f"Missing required field(s): {', '.join(missing)}"
    if payload["e"] not in ("pageview", "event"):
        return f"Invalid event type: {payload['e']}"
    return None


def handle_collect(event: Dict) -> Dict:
    """POST /collect"""
    payload = _parse_body(event)
    error = _validate_payload(payload)
    if error:
        return _error(400, error)

    try:
        beacon = Beacon.model_validate(payload)
    except ValidationError as e:
        return _error(400, describe_validation_error(e))

    headers = _headers(event)
    user_agent = event.get("requestContext", {}).get("http", {}).get("userAgent") or headers.get("user-agent")
    request = RequestInfo(ip=_client_ip(event, headers), user_agent=user_agent, headers=headers)

    result = _get_service().ingest(beacon, request)
    if not result.accepted:
        logger.debug(f"{HANDLER_NAME}: Dropped beacon for {beacon.s}: {result.reason}")
    return _no_content()


def handle_list_sites(event: Dict) -> Dict:
    """GET /sites"""
    service = _get_service()
    owner_id = auth.resolve_owner(_headers(event), service.settings)
    sites = service.list_sites(owner_id)
    return _response(200, {"sites": [site.to_json() for site in sites]})


def handle_create_site(event: Dict) -> Dict:
    """POST /sites"""
    service = _get_service()
    owner_id = auth.resolve_owner(_headers(event), service.settings)
    site = service.create_site(_parse_body(event), owner_id)
    return _response(201, site.to_json())


def handle_get_site(event: Dict) -> Dict:
    """GET /sites/{siteId}"""
    site = _get_service().get_site(_path_param(event, "siteId"))
    return _response(200, site.to_json())


def handle_update_site(event: Dict) -> Dict:
    """PATCH /sites/{siteId}"""
    service = _get_service()
    owner_id = auth.resolve_owner(_headers(event), service.settings)
    site = service.update_site(_path_param(event, "siteId"), _parse_body(event), owner_id)
    return _response(200, site.to_json())


def handle_stats(event: Dict) -> Dict:
    """
    GET /sites/{siteId}/stats?start&end

    Returns one aggregate per bucket in the range; the bucket size follows
    the range length (hour, day or month).
    """
    service = _get_service()
    site_id = _path_param(event, "siteId")
    start, end = _parse_date_range(event, service.clock())

    stats, period = service.stats(site_id, start, end)
    return _response(
        200,
        {
            "stats": [agg.to_json() for agg in stats],
            "dateRange": {"start": iso_timestamp(start), "end": iso_timestamp(end), "period": period.value},
        },
    )


def handle_realtime(event: Dict) -> Dict:
    """GET /sites/{siteId}/realtime?minutes=N"""
    site_id = _path_param(event, "siteId")
    raw_minutes = _query_params(event).get("minutes") or str(DEFAULT_REALTIME_MINUTES)
    try:
        minutes = int(raw_minutes)
    except ValueError:
        return _error(400, f"Invalid minutes: {raw_minutes}")
    if minutes < 1:
        return _error(400, f"Invalid minutes: {raw_minutes}")

    return _response(200, _get_service().realtime(site_id, minutes))


def handle_script(event: Dict) -> Dict:
    """GET /sites/{siteId}/script?api&minimal"""
    service = _get_service()
    site_id = _path_param(event, "siteId")
    params = _query_params(event)

    api = params.get("api") or service.settings.collect_endpoint
    if not api:
        domain = event.get("requestContext", {}).get("domainName")
        if not domain:
            return _error(400, "Missing required field(s): api")
        api = f"https://{domain}"
    minimal = params.get("minimal", "").lower() in ("1", "true", "yes")

    return _javascript(render_tracking_script(site_id, api, minimal=minimal))


def _parse_limit(event: Dict) -> int:
    raw = _query_params(event).get("limit") or str(breakdowns.DEFAULT_LIMIT)
    try:
        limit = int(raw)
    except ValueError:
        raise BadRequestError(f"Invalid limit: {raw}")
    if not 1 <= limit <= breakdowns.MAX_LIMIT:
        raise BadRequestError(f"limit must be between 1 and {breakdowns.MAX_LIMIT}")
    return limit


def handle_breakdown(event: Dict) -> Dict:
    """
    GET /sites/{siteId}/{pages|referrers|devices|browsers|countries|campaigns}?start&end&limit

    Top values of one page view dimension over the date range.
    """
    service = _get_service()
    site_id = _path_param(event, "siteId")
    dimension = event["routeKey"].rsplit("/", 1)[1]
    start, end = _parse_date_range(event, service.clock())
    limit = _parse_limit(event)

    logger.info(f"{HANDLER_NAME}: Getting top {dimension} for {site_id}")
    return _response(
        200,
        {
            dimension: service.breakdown(site_id, dimension, start, end, limit),
            "dateRange": {"start": iso_timestamp(start), "end": iso_timestamp(end)},
        },
    )


def handle_entry_exit_pages(event: Dict) -> Dict:
    """GET /sites/{siteId}/entry-exit?start&end&limit"""
    service = _get_service()
    site_id = _path_param(event, "siteId")
    start, end = _parse_date_range(event, service.clock())
    pages = service.entry_exit_pages(site_id, start, end, _parse_limit(event))
    return _response(200, {**pages, "dateRange": {"start": iso_timestamp(start), "end": iso_timestamp(end)}})


def handle_list_goals(event: Dict) -> Dict:
    """GET /sites/{siteId}/goals"""
    goals = _get_service().list_goals(_path_param(event, "siteId"))
    return _response(200, {"goals": [goal.to_json() for goal in goals]})


def handle_create_goal(event: Dict) -> Dict:
    """POST /sites/{siteId}/goals"""
    goal = _get_service().create_goal(_path_param(event, "siteId"), _parse_body(event))
    return _response(201, goal.to_json())


def handle_goal_stats(event: Dict) -> Dict:
    """GET /sites/{siteId}/goals/stats?start&end"""
    service = _get_service()
    site_id = _path_param(event, "siteId")
    start, end = _parse_date_range(event, service.clock())
    return _response(
        200,
        {
            "goals": service.goal_stats(site_id, start, end),
            "dateRange": {"start": iso_timestamp(start), "end": iso_timestamp(end)},
        },
    )


def handle_sessions(event: Dict) -> Dict:
    """GET /sites/{siteId}/sessions?date=YYYY-MM-DD"""
    service = _get_service()
    site_id = _path_param(event, "siteId")
    date = _query_params(event).get("date") or service.clock().strftime("%Y-%m-%d")
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", date):
        return _error(400, f"Invalid date: {date}")

    sessions = service.list_sessions(site_id, date)
    return _response(200, {"date": date, "sessions": sessions, "total": len(sessions)})


def handle_events(event: Dict) -> Dict:
    """GET /sites/{siteId}/events?name&start&end"""
    service = _get_service()
    site_id = _path_param(event, "siteId")
    name = _query_params(event).get("name")
    if not name:
        return _error(400, "Missing required field(s): name")
    start, end = _parse_date_range(event, service.clock())

    events = service.list_events(site_id, name, start, end)
    return _response(200, {"name": name, "events": [e.to_json() for e in events], "total": len(events)})


def handle_visitor(event: Dict) -> Dict:
    """GET /sites/{siteId}/visitors/{visitorId}"""
    site_id = _path_param(event, "siteId")
    visitor_id = _path_param(event, "visitorId")
    pageviews = _get_service().visitor_journey(site_id, visitor_id)
    return _response(
        200,
        {"visitorId": visitor_id, "pageViews": [pv.to_json() for pv in pageviews], "total": len(pageviews)},
    )


ROUTES = {
    "POST /collect": handle_collect,
    "GET /sites": handle_list_sites,
    "POST /sites": handle_create_site,
    "GET /sites/{siteId}": handle_get_site,
    "PATCH /sites/{siteId}": handle_update_site,
    "GET /sites/{siteId}/stats": handle_stats,
    "GET /sites/{siteId}/realtime": handle_realtime,
    "GET /sites/{siteId}/script": handle_script,
    "GET /sites/{siteId}/pages": handle_breakdown,
    "GET /sites/{siteId}/referrers": handle_breakdown,
    "GET /sites/{siteId}/devices": handle_breakdown,
    "GET /sites/{siteId}/browsers": handle_breakdown,
    "GET /sites/{siteId}/countries": handle_breakdown,
    "GET /sites/{siteId}/campaigns": handle_breakdown,
    "GET /sites/{siteId}/entry-exit": handle_entry_exit_pages,
    "GET /sites/{siteId}/goals": handle_list_goals,
    "POST /sites/{siteId}/goals": handle_create_goal,
    "GET /sites/{siteId}/goals/stats": handle_goal_stats,
    "GET /sites/{siteId}/sessions": handle_sessions,
    "GET /sites/{siteId}/events": handle_events,
    "GET /sites/{siteId}/visitors/{visitorId}": handle_visitor,
}


def _compile_route(route_key: str):
    method, template = route_key.split(" ", 1)
    pattern = re.sub(r"\{(\w+)\}", r"(?P<\1>[^/]+)", template)
    return method, re.compile(f"^{pattern}/?$")


_ROUTE_PATTERNS = [(_compile_route(key), key) for key in ROUTES]


def _match_raw_path(method: str, raw_path: str) -> Tuple[Optional[str], Dict[str, str]]:
    """Resolve a $default request (function URL) to a route key and its path parameters."""
    for (route_method, pattern), key in _ROUTE_PATTERNS:
        if route_method != method:
            continue
        match = pattern.match(raw_path)
        if match:
            return key, match.groupdict()
    return None, {}


def lambda_handler(event: Dict, context: Any) -> Dict:
    """Main Lambda handler - routes requests to appropriate handlers."""
    # The raw event carries the client IP
    logger.debug(f"{HANDLER_NAME}: Received event: {json.dumps(event, default=str)}")

    # Handle CORS preflight
    http_method = event.get("requestContext", {}).get("http", {}).get("method")
    if http_method == "OPTIONS":
        return _response(200, {})

    route_key = event.get("routeKey", "")
    if route_key in ("", "$default"):
        route_key, path_params = _match_raw_path(http_method or "", event.get("rawPath", ""))
        if route_key is None:
            return _error(404, f"Route not found: {http_method} {event.get('rawPath', '')}")
        event = {**event, "routeKey": route_key, "pathParameters": path_params}

    handler = ROUTES.get(route_key)
    if handler:
        try:
            return handler(event)
        except CollectorError as e:
            if e.status_code >= 500:
                logger.error(f"{HANDLER_NAME}: {route_key} failed: {e}")
            else:
                logger.info(f"{HANDLER_NAME}: {route_key} rejected ({e.status_code}): {e}")
            return _error(e.status_code, str(e))
        except Exception as e:
            logger.exception(f"{HANDLER_NAME}: Error handling request")
            return _error(500, f"Internal error: {e}")

    return _error(404, f"Route not found: {route_key}")
