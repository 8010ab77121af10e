"""Unit tests for ingestion orchestration and site/goal management."""

import pytest

from analytics_collector.errors import BadRequestError, ConflictError, NotFoundError
from analytics_collector.models import Beacon
from analytics_collector.service import (
    CollectorService,
    RequestInfo,
    event_value,
    extract_utm,
    slugify,
    tracking_disabled,
)

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _request(ip="203.0.113.7", ua=CHROME, **headers):
    return RequestInfo(ip=ip, user_agent=ua, headers={k.replace("_", "-"): v for k, v in headers.items()})


def _beacon(**kwargs):
    data = {"s": "site-1", "sid": "sess-1", "e": "pageview", "u": "https://example.com/home"}
    data.update(kwargs)
    return Beacon.model_validate(data)


class TestHelpers:
    @pytest.mark.unit
    def test_tracking_disabled_headers(self):
        """Test DNT and Sec-GPC are honoured in any case."""
        assert tracking_disabled({"DNT": "1"})
        assert tracking_disabled({"sec-gpc": "1"})
        assert not tracking_disabled({"dnt": "0"})
        assert not tracking_disabled({})

    @pytest.mark.unit
    def test_extract_utm(self):
        utm = extract_utm("utm_source=newsletter&utm_campaign=spring&ref=x")

        assert utm.source == "newsletter"
        assert utm.campaign == "spring"
        assert utm.medium is None
        assert extract_utm("ref=x") is None

    @pytest.mark.unit
    def test_slugify(self):
        assert slugify("My Blog!") == "my-blog"
        assert slugify("  --  ") == ""

    @pytest.mark.unit
    def test_event_value_only_keeps_finite_numbers(self):
        """Test event values that JSON or Python can produce but DynamoDB cannot store become None."""
        assert event_value(10) == 10.0
        assert event_value(2.5) == 2.5
        assert event_value(float("inf")) is None
        assert event_value(float("-inf")) is None
        assert event_value(float("nan")) is None
        assert event_value(10**400) is None
        assert event_value(True) is None
        assert event_value("12") is None
        assert event_value(None) is None


class TestIngest:
    @pytest.mark.unit
    def test_pageview_persists_records(self, service):
        """Test a pageview writes PageView, Session and counters."""
        result = service.ingest(_beacon(r="https://www.google.com/"), _request())

        assert result.accepted
        [pageview] = service.store.list_visitor_pageviews("site-1", result.visitor_id)
        assert pageview.path == "/home"
        assert pageview.hostname == "example.com"
        assert pageview.referrer_source == "google"
        assert pageview.device.browser == "Chrome"
        assert pageview.is_unique and pageview.is_bounce

        session = service.store.get_session("site-1", "sess-1")
        assert session.page_view_count == 1
        assert service.realtime("site-1", 5)["pageViews"] == 1

    @pytest.mark.unit
    def test_second_pageview_updates_session(self, service, clock):
        """Test bounce, count and exit path after two pageviews."""
        service.ingest(_beacon(), _request())
        clock.advance(seconds=20)
        service.ingest(_beacon(u="https://example.com/pricing"), _request())

        session = service.store.get_session("site-1", "sess-1")
        assert session.is_bounce is False
        assert session.page_view_count == 2
        assert session.exit_path == "/pricing"
        assert session.duration == 20000

    @pytest.mark.unit
    def test_custom_event(self, service):
        """Test events are stored by name and counted on the session."""
        service.ingest(_beacon(), _request())
        result = service.ingest(_beacon(e="event", p={"name": "signup", "value": 10}), _request())

        assert result.accepted
        session = service.store.get_session("site-1", "sess-1")
        assert session.event_count == 1
        assert session.is_bounce is True
        [event] = service.list_events("site-1", "signup", service.clock().replace(hour=0), service.clock())
        assert event.value == 10
        assert service.realtime("site-1", 5)["pageViews"] == 1

    @pytest.mark.unit
    def test_non_finite_event_value_is_dropped(self, service):
        """Test an Infinity value is stored as an event without a value."""
        service.ingest(_beacon(), _request())
        result = service.ingest(_beacon(e="event", p={"name": "signup", "value": float("inf")}), _request())

        assert result.accepted
        [event] = service.list_events("site-1", "signup", service.clock().replace(hour=0), service.clock())
        assert event.value is None

    @pytest.mark.unit
    def test_goal_converts_once_across_cold_start(self, service, settings, clock):
        """Test a second container with no memory of the session does not convert it again."""
        goal = service.create_goal("site-1", {"name": "Signup", "type": "pageview", "pattern": "/thank-you"})
        thanks = _beacon(sid="sess-2", u="https://example.com/thank-you")
        assert service.ingest(thanks, _request()).conversions == 1

        cold = CollectorService(settings, service.store.table, clock=clock)

        assert cold.ingest(thanks, _request()).conversions == 0
        assert len(service.store.list_conversions("site-1", goal.id)) == 1

    @pytest.mark.unit
    def test_dnt_suppresses_everything(self, service):
        """Test DNT drops the beacon before any write."""
        result = service.ingest(_beacon(), _request(DNT="1"))

        assert not result.accepted
        assert result.reason == "dnt"
        assert result.visitor_id is None
        assert service.store.get_session("site-1", "sess-1") is None

    @pytest.mark.unit
    def test_bots_are_dropped(self, service):
        result = service.ingest(_beacon(), _request(ua="Googlebot/2.1 (+http://www.google.com/bot.html)"))

        assert result.reason == "bot"

    @pytest.mark.unit
    def test_invalid_url_rejected(self, service):
        """Test non-absolute or non-http URLs are rejected."""
        for url in ("/relative", "ftp://example.com/x", "https://", "http://[::1"):
            with pytest.raises(BadRequestError):
                service.ingest(_beacon(u=url), _request())

    @pytest.mark.unit
    def test_missing_sid_derives_session_from_visitor(self, service):
        result = service.ingest(_beacon(sid=None), _request())

        assert result.session_id == f"v-{result.visitor_id[:16]}"

    @pytest.mark.unit
    def test_same_browser_same_visitor_within_day(self, service, clock):
        """Test the visitor id is stable within a day and rotates the next day."""
        first = service.ingest(_beacon(), _request())
        clock.advance(hours=2)
        second = service.ingest(_beacon(sid="sess-2"), _request())
        clock.advance(days=1)
        third = service.ingest(_beacon(sid="sess-3"), _request())

        assert first.visitor_id == second.visitor_id
        assert third.visitor_id != first.visitor_id

    @pytest.mark.unit
    def test_site_settings_are_enforced(self, service):
        """Test excluded paths, excluded IPs and disabled tracking switches."""
        service.create_site(
            {
                "name": "Site 1",
                "settings": {
                    "excludedPaths": ["/admin"],
                    "excludedIps": ["10.0.0.1"],
                    "trackReferrers": False,
                    "trackDevices": False,
                },
            },
            "owner-1",
        )

        assert service.ingest(_beacon(u="https://example.com/admin/users"), _request()).reason == "excluded_path"
        assert service.ingest(_beacon(), _request(ip="10.0.0.1")).reason == "excluded_ip"

        result = service.ingest(_beacon(r="https://google.com"), _request())
        [pageview] = service.store.list_visitor_pageviews("site-1", result.visitor_id)
        assert pageview.referrer is None
        assert pageview.device is None

    @pytest.mark.unit
    def test_inactive_site_drops_beacons(self, service):
        service.create_site({"name": "Site 1"}, "owner-1")
        service.update_site("site-1", {"isActive": False}, "owner-1")

        assert service.ingest(_beacon(), _request()).reason == "inactive"

    @pytest.mark.unit
    def test_site_retention_sets_raw_ttl(self, service, clock):
        """Test raw records expire after the site's retention."""
        service.create_site({"name": "Site 1", "settings": {"retentionDays": 7}}, "owner-1")
        service.ingest(_beacon(), _request())

        item = service.store.table.get_item(Key={"pk": "SITE#site-1", "sk": "SESSION#sess-1"})["Item"]
        assert int(item["ttl"]) == int(clock().timestamp()) + 7 * 86400

    @pytest.mark.unit
    def test_geo_and_utm_are_recorded(self, service):
        result = service.ingest(
            _beacon(u="https://example.com/?utm_source=news&utm_medium=email"),
            _request(**{"cloudfront-viewer-country": "CA", "cloudfront-viewer-city": "Toronto"}),
        )

        [pageview] = service.store.list_visitor_pageviews("site-1", result.visitor_id)
        assert pageview.country == "CA"
        assert pageview.city == "Toronto"
        assert pageview.utm.source == "news"
        assert pageview.utm.medium == "email"

    @pytest.mark.unit
    def test_goal_converts_once_per_session(self, service):
        """Test the thank-you goal records exactly one conversion per session."""
        goal = service.create_goal("site-1", {"name": "Signup", "type": "pageview", "pattern": "/thank-you"})
        thanks = _beacon(sid="sess-2", u="https://example.com/thank-you")

        assert service.ingest(thanks, _request()).conversions == 1
        assert service.ingest(thanks, _request()).conversions == 0
        assert len(service.store.list_conversions("site-1", goal.id)) == 1

    @pytest.mark.unit
    def test_duration_goal_fires_on_long_session(self, service, clock):
        service.create_goal("site-1", {"name": "Engaged", "type": "duration", "durationMinutes": 3})

        assert service.ingest(_beacon(), _request()).conversions == 0
        clock.advance(minutes=4)
        assert service.ingest(_beacon(u="https://example.com/next"), _request()).conversions == 1


class TestSitesAndGoals:
    @pytest.mark.unit
    def test_create_site_slug_and_conflict(self, service):
        """Test site ids are slugified names and duplicates conflict."""
        site = service.create_site({"name": "My Blog", "domains": ["blog.example.com"]}, "owner-1")

        assert site.id == "my-blog"
        assert service.get_site("my-blog").domains == ["blog.example.com"]
        with pytest.raises(ConflictError):
            service.create_site({"name": "My Blog"}, "owner-1")

    @pytest.mark.unit
    def test_create_site_validation(self, service):
        with pytest.raises(BadRequestError, match="name"):
            service.create_site({}, "owner-1")
        with pytest.raises(BadRequestError, match="bogus"):
            service.create_site({"name": "x", "settings": {"bogus": True}}, "owner-1")

    @pytest.mark.unit
    def test_unknown_site_not_found(self, service):
        with pytest.raises(NotFoundError):
            service.get_site("missing")

    @pytest.mark.unit
    def test_update_site_only_settings_and_active(self, service):
        """Test PATCH semantics: settings merge, other fields rejected."""
        service.create_site({"name": "Site 1"}, "owner-1")

        site = service.update_site("site-1", {"settings": {"trackUtm": False}}, "owner-1")
        assert site.settings.track_utm is False
        assert site.settings.track_referrers is True

        with pytest.raises(BadRequestError, match="name"):
            service.update_site("site-1", {"name": "Renamed"}, "owner-1")
        with pytest.raises(NotFoundError):
            service.update_site("site-1", {"isActive": False}, "someone-else")

    @pytest.mark.unit
    def test_update_site_settings_must_be_object(self, service):
        service.create_site({"name": "Site 1"}, "owner-1")

        for bad in (["trackUtm"], "off", 1):
            with pytest.raises(BadRequestError, match="settings must be an object"):
                service.update_site("site-1", {"settings": bad}, "owner-1")

    @pytest.mark.unit
    def test_goal_value_must_be_finite(self, service):
        with pytest.raises(BadRequestError, match="value"):
            service.create_goal("site-1", {"name": "x", "type": "pageview", "pattern": "/", "value": float("inf")})

    @pytest.mark.unit
    def test_breakdowns_and_entry_exit_pages(self, service, clock):
        """Test top pages and entry/exit pages come from the stored page views and sessions."""
        service.ingest(_beacon(sid="a", u="https://example.com/home"), _request(ip="198.51.100.1"))
        service.ingest(_beacon(sid="b", u="https://example.com/home"), _request(ip="198.51.100.2"))
        clock.advance(minutes=1)
        service.ingest(_beacon(sid="a", u="https://example.com/pricing"), _request(ip="198.51.100.1"))

        now = clock()
        start = now.replace(hour=0, minute=0)
        pages = service.breakdown("site-1", "pages", start, now, 10)
        result = service.entry_exit_pages("site-1", start, now, 10)

        assert pages == [
            {"value": "/home", "pageViews": 2, "visitors": 2},
            {"value": "/pricing", "pageViews": 1, "visitors": 1},
        ]
        assert result["entryPages"] == [{"path": "/home", "sessions": 2, "bounceRate": 50.0}]
        assert result["exitPages"] == [{"path": "/home", "sessions": 1}, {"path": "/pricing", "sessions": 1}]

    @pytest.mark.unit
    def test_invalid_goal_rejected(self, service):
        with pytest.raises(BadRequestError):
            service.create_goal("site-1", {"name": "x", "type": "scroll"})

    @pytest.mark.unit
    def test_goal_stats(self, service):
        """Test conversion counts, value and rate against unique visitors."""
        goal = service.create_goal(
            "site-1", {"name": "Buy", "type": "pageview", "pattern": "/done", "value": 20}
        )
        service.ingest(_beacon(sid="a", u="https://example.com/done"), _request(ip="198.51.100.1"))
        service.ingest(_beacon(sid="b", u="https://example.com/home"), _request(ip="198.51.100.2"))

        now = service.clock()
        [stats] = service.goal_stats("site-1", now.replace(hour=0), now)

        assert stats["goalId"] == goal.id
        assert stats["conversions"] == 1
        assert stats["value"] == 20
        assert stats["conversionRate"] == 50.0

    @pytest.mark.unit
    def test_list_sessions_flags_active(self, service, clock):
        service.ingest(_beacon(), _request())
        clock.advance(minutes=45)
        service.ingest(_beacon(sid="sess-2"), _request())

        sessions = {s["id"]: s for s in service.list_sessions("site-1", "2024-01-15")}

        assert sessions["sess-1"]["isActive"] is False
        assert sessions["sess-2"]["isActive"] is True
